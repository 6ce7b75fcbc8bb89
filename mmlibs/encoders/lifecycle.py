"""Load/use/dispose state machine shared by the vision and audio encoders.

States::

    UNINITIALIZED -> LOADING -> LOADED
    (any state)   -> DISPOSED            (terminal, idempotent)

The controller is the only object allowed to call ``create_context`` and
``free_context`` on its backend. Each native context is freed exactly once:
either by ``dispose()`` directly, or, when encodes are still running, by
the last encode to finish.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional

import numpy as np
import structlog

from ..common.logging import log_performance
from ..common.metrics import MetricsCollector, get_metrics_collector
from .base import (
    AlreadyDisposedError,
    BackendInitError,
    DisposedError,
    EncodeError,
    EncoderBackend,
    MultimodalError,
    NotLoadedError,
    UnsupportedFormatError,
    ValidationError,
)
from .capabilities import CapabilityRegistry

logger = structlog.get_logger("encoders.lifecycle")


class ModelState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LOADED = "loaded"
    DISPOSED = "disposed"


@dataclass
class ModelHandle:
    """Owned native context plus the state it is in.

    ``native_context`` is set if and only if ``state`` is ``LOADED``.
    """
    path: str
    mmproj_path: Optional[str] = None
    native_context: Any = None
    state: ModelState = ModelState.UNINITIALIZED


class ModelLifecycleController:
    """Base controller; subclasses add the modality specific ``process_*``."""

    modality = "encoder"

    def __init__(
        self,
        model_path: str,
        backend: EncoderBackend,
        capabilities: CapabilityRegistry,
        mmproj_path: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        if not model_path:
            raise ValidationError(f"{self.modality} model path must be a non-empty string")

        self._handle = ModelHandle(path=model_path, mmproj_path=mmproj_path)
        self._backend = backend
        self._capabilities = capabilities
        self._metrics = metrics or get_metrics_collector()

        self._state_lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._active_encodes = 0
        self._deferred_context: Any = None

    @property
    def state(self) -> ModelState:
        return self._handle.state

    @property
    def is_loaded(self) -> bool:
        return self._handle.state is ModelState.LOADED

    @property
    def is_disposed(self) -> bool:
        return self._handle.state is ModelState.DISPOSED

    @property
    def model_path(self) -> str:
        return self._handle.path

    @property
    def backend_available(self) -> bool:
        return getattr(self._backend, "available", True)

    def get_capabilities(self):
        """Capability snapshot: defaults before load, backend limits after."""
        return self._capabilities.get_capabilities()

    def load(self) -> bool:
        """Create the native context and refresh capabilities.

        Returns ``True`` once loaded; repeated calls are no-ops.
        """
        with self._load_lock:
            with self._state_lock:
                if self._handle.state is ModelState.DISPOSED:
                    raise AlreadyDisposedError(f"{self.modality} model is disposed")
                if self._handle.state is ModelState.LOADED:
                    return True
                self._handle.state = ModelState.LOADING

            context = None
            try:
                context = self._backend.create_context(self._handle.path, self._handle.mmproj_path)
                if context is None:
                    raise BackendInitError(f"backend returned no context for {self._handle.path}")
                report: Dict[str, Any] = self._backend.describe(context) or {}
                capabilities = self._capabilities.resolve(report)
            except Exception as e:
                if context is not None:
                    self._free_context(context)
                with self._state_lock:
                    if self._handle.state is ModelState.LOADING:
                        self._handle.state = ModelState.UNINITIALIZED
                self._metrics.record_model_load(self.modality, "failure")
                logger.error(
                    "Failed to load encoder model",
                    modality=self.modality,
                    model_path=self._handle.path,
                    error=str(e)
                )
                if isinstance(e, (BackendInitError, UnsupportedFormatError)):
                    raise
                raise BackendInitError(
                    f"Failed to load {self.modality} model {self._handle.path}: {e}"
                ) from e

            with self._state_lock:
                disposed_while_loading = self._handle.state is ModelState.DISPOSED
                if not disposed_while_loading:
                    self._capabilities.publish(capabilities)
                    self._handle.native_context = context
                    self._handle.state = ModelState.LOADED

            if disposed_while_loading:
                self._free_context(context)
                logger.warning(
                    "Model disposed while loading; context released",
                    modality=self.modality,
                    model_path=self._handle.path
                )
                raise AlreadyDisposedError(f"{self.modality} model was disposed during load")

            self._metrics.record_model_load(self.modality, "success")
            logger.info("Loaded encoder model", modality=self.modality, model_path=self._handle.path)
            return True

    def dispose(self) -> None:
        """Release the native context; safe to call any number of times."""
        with self._state_lock:
            if self._handle.state is ModelState.DISPOSED:
                return
            was_loaded = self._handle.state is ModelState.LOADED
            context = self._handle.native_context
            self._handle.native_context = None
            self._handle.state = ModelState.DISPOSED
            if context is not None and self._active_encodes > 0:
                self._deferred_context = context
                context = None

        if context is not None:
            self._free_context(context)
        if was_loaded:
            self._metrics.record_model_dispose(self.modality)

        logger.info(
            "Disposed encoder model",
            modality=self.modality,
            model_path=self._handle.path,
            deferred_free=self._deferred_context is not None
        )

    def _free_context(self, context: Any) -> None:
        try:
            self._backend.free_context(context)
        except Exception as e:
            logger.error(
                "Failed to free native context",
                modality=self.modality,
                model_path=self._handle.path,
                error=str(e)
            )

    def _ensure_not_disposed(self) -> None:
        if self._handle.state is ModelState.DISPOSED:
            raise DisposedError(f"{self.modality} model is disposed")

    @contextmanager
    def _use_context(self) -> Iterator[Any]:
        """Borrow the native context for one encode."""
        with self._state_lock:
            self._ensure_not_disposed()
            if self._handle.state is not ModelState.LOADED:
                raise NotLoadedError(f"{self.modality} model not loaded")
            self._active_encodes += 1
            context = self._handle.native_context

        try:
            yield context
        finally:
            with self._state_lock:
                self._active_encodes -= 1
                deferred = None
                if self._active_encodes == 0 and self._deferred_context is not None:
                    deferred, self._deferred_context = self._deferred_context, None
            if deferred is not None:
                self._free_context(deferred)

    def _call_backend(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run an encode-path backend call; foreign errors become ``EncodeError``."""
        try:
            return method(*args, **kwargs)
        except MultimodalError:
            raise
        except Exception as e:
            raise EncodeError(f"{self.modality} backend call {method.__name__} failed: {e}") from e

    @contextmanager
    def _measure_encode(self) -> Iterator[None]:
        start = time.time()
        try:
            yield
        except Exception:
            self._metrics.record_encode(self.modality, "failure")
            raise
        duration = time.time() - start
        self._metrics.record_encode(self.modality, "success", duration)
        log_performance(f"{self.modality}.encode", duration * 1000, model_path=self._handle.path)


def check_embedding(buffer: Any) -> np.ndarray:
    """Validate backend output; empty or non-finite buffers are encode errors."""
    if buffer is None:
        raise EncodeError("Backend returned no embedding")
    try:
        embedding = np.asarray(buffer, dtype=np.float32).ravel()
    except (TypeError, ValueError) as e:
        raise EncodeError(f"Backend returned a non-numeric embedding: {e}") from e
    if embedding.size == 0:
        raise EncodeError("Backend returned an empty embedding")
    if not np.all(np.isfinite(embedding)):
        raise EncodeError("Backend returned non-finite embedding values")
    return embedding
