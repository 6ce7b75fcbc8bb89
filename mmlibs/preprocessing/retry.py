"""Retry handler for recoverable preprocessing failures.

Preprocessing retries are bounded and immediate: the second attempt runs
with arguments rewritten by a ``recover`` callback (for example the channel
count inferred from the buffer length). Backend failures are never listed
as retryable.
"""

from typing import Any, Callable, Dict, Optional, Tuple

import structlog

logger = structlog.get_logger("preprocessing.retry")

RecoverFn = Callable[[Exception, Tuple[Any, ...], Dict[str, Any]], Tuple[Tuple[Any, ...], Dict[str, Any]]]


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 2,
        retryable_exceptions: tuple = ()
    ):
        self.max_attempts = max_attempts
        self.retryable_exceptions = retryable_exceptions


class RetryHandler:
    """Runs a callable, retrying only on the configured exception types."""

    def __init__(self, config: RetryConfig):
        self.config = config

    def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        recover: Optional[RecoverFn] = None,
        **kwargs
    ) -> Any:
        """Execute function with retry logic."""
        for attempt in range(self.config.max_attempts):
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=operation_name,
                        attempt=attempt + 1,
                        total_attempts=self.config.max_attempts
                    )

                return result

            except self.config.retryable_exceptions as e:
                if attempt == self.config.max_attempts - 1:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=self.config.max_attempts,
                        error=str(e)
                    )
                    raise

                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts,
                    error=str(e)
                )

                if recover is not None:
                    args, kwargs = recover(e, args, kwargs)

        raise RuntimeError("Retry logic error")
