"""Metrics collection for the multimodal encoders.

Provides a thin convenience wrapper around ``prometheus_client`` so the
controllers, the backend manager and the facade record encode, lifecycle
and cache metrics consistently.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected for tests)
- ``measure_time`` is provided for quick timing instrumentation
"""

import time
from functools import wraps
from typing import Any, Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

from .config import get_config

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for encoder components.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    - enabled: When ``False`` every ``record_*`` call is a no-op
    """

    def __init__(
        self,
        service_name: str,
        registry: Optional[CollectorRegistry] = None,
        enabled: bool = True
    ):
        self.service_name = service_name
        self.enabled = enabled
        self.registry = registry or CollectorRegistry()

        self.encode_requests = Counter(
            'mm_encode_requests_total',
            'Total encode requests',
            ['modality', 'status'],
            registry=self.registry
        )

        self.encode_duration = Histogram(
            'mm_encode_duration_seconds',
            'Preprocess + encode duration',
            ['modality'],
            registry=self.registry
        )

        self.model_loads = Counter(
            'mm_model_loads_total',
            'Encoder model load attempts',
            ['modality', 'status'],
            registry=self.registry
        )

        self.models_loaded = Gauge(
            'mm_models_loaded',
            'Number of encoder models currently loaded',
            ['modality'],
            registry=self.registry
        )

        self.backend_calls = Counter(
            'mm_backend_calls_total',
            'Global backend init/free calls',
            ['operation', 'status'],
            registry=self.registry
        )

        self.cache_hits = Counter(
            'mm_cache_hits_total',
            'Total embedding cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'mm_cache_misses_total',
            'Total embedding cache misses',
            ['cache_type'],
            registry=self.registry
        )

    def record_encode(self, modality: str, status: str, duration: Optional[float] = None) -> None:
        """Record an encode request; ``duration`` is in seconds."""
        if not self.enabled:
            return
        self.encode_requests.labels(modality=modality, status=status).inc()
        if duration is not None:
            self.encode_duration.labels(modality=modality).observe(duration)

    def record_model_load(self, modality: str, status: str) -> None:
        """Record a load attempt and keep the loaded gauge in sync."""
        if not self.enabled:
            return
        self.model_loads.labels(modality=modality, status=status).inc()
        if status == "success":
            self.models_loaded.labels(modality=modality).inc()

    def record_model_dispose(self, modality: str) -> None:
        """Record that a loaded model was released."""
        if not self.enabled:
            return
        self.models_loaded.labels(modality=modality).dec()

    def record_backend_call(self, operation: str, status: str) -> None:
        """Record a global backend ``init``/``free`` call."""
        if not self.enabled:
            return
        self.backend_calls.labels(operation=operation, status=status).inc()

    def record_cache_hit(self, cache_type: str) -> None:
        """Record cache hit."""
        if not self.enabled:
            return
        self.cache_hits.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        """Record cache miss."""
        if not self.enabled:
            return
        self.cache_misses.labels(cache_type=cache_type).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str = "multimodal-encoders") -> MetricsCollector:
    """Get or create the process-wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(
            service_name, enabled=get_config("base").mm_metrics_enabled
        )
    return _metrics_collector


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator to measure function execution time.

    Example
    >>> @measure_time("vision.load")
    ... def load(self):
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
                duration = time.time() - start_time
                logger.info(
                    f"Operation {operation} completed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    **labels
                )
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    error=str(e),
                    **labels
                )
                raise
        return wrapper
    return decorator
