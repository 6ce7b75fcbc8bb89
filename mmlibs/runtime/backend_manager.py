"""Process-wide native backend initialization.

The native runtime must be initialized once before any encoder context is
created and freed once when nothing needs it anymore. ``init`` and
``dispose`` may be requested from many coroutines and threads at the same
time; every request attaches to the single in-flight operation instead of
starting its own, and all of the real work runs on one dedicated worker
thread so the event loop is never blocked on native calls.

Because that worker is serial, a dispose requested while init is running
is queued behind it and releases whatever the init acquired.
"""

import asyncio
import atexit
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Optional

import structlog

from ..common.config import get_config
from ..common.metrics import MetricsCollector, get_metrics_collector, measure_time
from ..encoders.base import BackendInitError, DisposedError, GlobalBackend, MultimodalError
from ..encoders.factory import create_global_backend

logger = structlog.get_logger("runtime.backend_manager")


class BackendState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    DISPOSING = "disposing"
    DISPOSED = "disposed"


class BackendResourceManager:
    """Owns the one-time ``init``/``free`` of a ``GlobalBackend``.

    ``init()`` after ``dispose()`` has been requested fails with
    ``DisposedError``; the manager is single-use.
    """

    def __init__(self, backend: GlobalBackend, metrics: Optional[MetricsCollector] = None):
        self._backend = backend
        self._metrics = metrics or get_metrics_collector()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mm-backend")

        self._initialized = False
        self._dispose_requested = False
        self._disposed = False
        self._init_future: Optional[Future] = None
        self._dispose_future: Optional[Future] = None

    @property
    def backend(self) -> GlobalBackend:
        return self._backend

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def state(self) -> BackendState:
        with self._lock:
            if self._disposed:
                return BackendState.DISPOSED
            if self._dispose_requested:
                return BackendState.DISPOSING
            if self._initialized:
                return BackendState.INITIALIZED
            if self._init_future is not None and not self._init_future.done():
                return BackendState.INITIALIZING
            return BackendState.UNINITIALIZED

    def submit_init(self) -> Future:
        """Start initialization or attach to the one already running."""
        with self._lock:
            if self._dispose_requested:
                raise DisposedError("native backend has been disposed")
            if self._init_future is not None:
                failed = self._init_future.done() and self._init_future.exception() is not None
                if not failed:
                    return self._init_future
            self._init_future = self._executor.submit(self._run_init)
            return self._init_future

    def submit_dispose(self) -> Future:
        """Start the release or attach to the one already requested."""
        with self._lock:
            if self._dispose_future is None:
                self._dispose_requested = True
                self._dispose_future = self._executor.submit(self._run_dispose)
            return self._dispose_future

    async def init(self) -> None:
        """Initialize the native backend; concurrent callers share one call."""
        await asyncio.wrap_future(self.submit_init())

    async def dispose(self) -> None:
        """Release the native backend; idempotent and never raises for free errors."""
        await asyncio.wrap_future(self.submit_dispose())

    def dispose_sync(self, timeout: Optional[float] = None) -> None:
        self.submit_dispose().result(timeout=timeout)

    @measure_time("backend.init")
    def _run_init(self) -> None:
        if self._initialized:
            return
        try:
            self._backend.init()
        except Exception as e:
            self._metrics.record_backend_call("init", "failure")
            logger.error("Native backend initialization failed", error=str(e))
            if isinstance(e, MultimodalError):
                raise
            raise BackendInitError(f"Native backend initialization failed: {e}") from e

        self._metrics.record_backend_call("init", "success")
        with self._lock:
            self._initialized = True
        logger.info("Native backend initialized")

    def _run_dispose(self) -> None:
        with self._lock:
            was_initialized = self._initialized
            self._initialized = False
        if was_initialized:
            self._free()
        with self._lock:
            self._disposed = True
        logger.info("Native backend disposed", was_initialized=was_initialized)

    def _free(self) -> None:
        try:
            self._backend.free()
            self._metrics.record_backend_call("free", "success")
        except Exception as e:
            self._metrics.record_backend_call("free", "failure")
            logger.error("Native backend free failed", error=str(e))
        with self._lock:
            self._initialized = False

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker thread; pending operations finish first when ``wait``."""
        self._executor.shutdown(wait=wait)


_backend_manager: Optional[BackendResourceManager] = None
_manager_lock = threading.Lock()


def get_backend_manager(backend: Optional[GlobalBackend] = None) -> BackendResourceManager:
    """Get or create the process-wide backend manager.

    ``backend`` is only used when the manager does not exist yet; otherwise
    the configured global backend is created from the factory.
    """
    global _backend_manager
    with _manager_lock:
        if _backend_manager is None:
            if backend is None:
                backend = create_global_backend(get_config("base").mm_backend)
            _backend_manager = BackendResourceManager(backend)
        return _backend_manager


def reset_backend_manager() -> None:
    """Dispose and forget the process-wide manager."""
    global _backend_manager
    with _manager_lock:
        manager, _backend_manager = _backend_manager, None
    if manager is not None:
        manager.dispose_sync()
        manager.shutdown()


@atexit.register
def _free_at_exit() -> None:
    manager = _backend_manager
    if manager is None or manager.disposed:
        return
    try:
        manager.dispose_sync(timeout=5.0)
    except Exception as e:
        logger.error("Failed to release native backend at exit", error=str(e))
    manager.shutdown(wait=False)
