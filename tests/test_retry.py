"""Tests for the preprocessing retry handler."""

import pytest

from mmlibs.preprocessing.retry import RetryConfig, RetryHandler


class Flaky(Exception):
    pass


def test_retry_uses_recovered_arguments():
    """The second attempt runs with the arguments from ``recover``."""
    seen = []

    def op(value):
        seen.append(value)
        if value < 0:
            raise Flaky("negative")
        return value * 10

    handler = RetryHandler(RetryConfig(max_attempts=2, retryable_exceptions=(Flaky,)))
    result = handler.execute_with_retry(
        op, -1, operation_name="op", recover=lambda e, args, kwargs: ((abs(args[0]),), kwargs)
    )
    assert result == 10
    assert seen == [-1, 1]


def test_retry_gives_up_after_max_attempts():
    """Test exhaustion."""
    handler = RetryHandler(RetryConfig(max_attempts=2, retryable_exceptions=(Flaky,)))
    calls = []

    def op():
        calls.append(1)
        raise Flaky("always")

    with pytest.raises(Flaky):
        handler.execute_with_retry(op)
    assert len(calls) == 2


def test_non_retryable_errors_propagate_immediately():
    """Test that other exceptions are not retried."""
    handler = RetryHandler(RetryConfig(max_attempts=3, retryable_exceptions=(Flaky,)))
    calls = []

    def op():
        calls.append(1)
        raise KeyError("x")

    with pytest.raises(KeyError):
        handler.execute_with_retry(op)
    assert len(calls) == 1
