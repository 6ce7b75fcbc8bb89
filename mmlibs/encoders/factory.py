"""Encoder backend factory.

Centralizes creation of concrete backends so controllers don't depend on
which native libraries happen to be present. Native bindings register
themselves under a name; asking for a name nobody registered yields an
*unavailable* backend that fails fast with ``UnsupportedFormatError``
instead of producing placeholder embeddings.
"""

from enum import Enum
from typing import Any, Callable, Dict, Tuple

import structlog

from .base import (
    AudioEncoderBackend,
    GlobalBackend,
    UnsupportedFormatError,
    VisionEncoderBackend,
)

logger = structlog.get_logger("encoders.factory")


class BackendKind(Enum):
    """Kinds of native components a binding can provide."""
    VISION = "vision"
    AUDIO = "audio"
    GLOBAL = "global"


class _Unavailable:
    """Shared behaviour of the unavailable variants."""

    available = False

    def __init__(self, reason: str):
        self.reason = reason

    def _fail(self, *args: Any, **kwargs: Any):
        raise UnsupportedFormatError(f"{self.name} support not available: {self.reason}")


class UnavailableVisionBackend(_Unavailable, VisionEncoderBackend):
    name = "vision"

    def create_context(self, model_path, mmproj_path=None):
        self._fail()

    def free_context(self, context):
        self._fail()

    def describe(self, context):
        self._fail()

    def preprocess(self, context, batch):
        self._fail()

    def encode(self, context, batch):
        self._fail()


class UnavailableAudioBackend(_Unavailable, AudioEncoderBackend):
    name = "audio"

    def create_context(self, model_path, mmproj_path=None):
        self._fail()

    def free_context(self, context):
        self._fail()

    def describe(self, context):
        self._fail()

    def encode(self, context, batch, language="auto", generate_transcript=True):
        self._fail()


class UnavailableGlobalBackend(_Unavailable, GlobalBackend):
    name = "global backend"

    def init(self):
        self._fail()

    def free(self):
        # init() never succeeds here
        return None


_UNAVAILABLE = {
    BackendKind.VISION: UnavailableVisionBackend,
    BackendKind.AUDIO: UnavailableAudioBackend,
    BackendKind.GLOBAL: UnavailableGlobalBackend,
}


class BackendFactory:
    """Registry of backend constructors keyed by ``(kind, name)``."""

    _registry: Dict[Tuple[BackendKind, str], Callable[..., Any]] = {}

    @classmethod
    def register(cls, kind: BackendKind, name: str, constructor: Callable[..., Any]) -> None:
        """Register ``constructor`` as the ``name`` backend for ``kind``."""
        cls._registry[(kind, name)] = constructor
        logger.info("Registered encoder backend", kind=kind.value, name=name)

    @classmethod
    def unregister(cls, kind: BackendKind, name: str) -> None:
        cls._registry.pop((kind, name), None)

    @classmethod
    def is_available(cls, kind: BackendKind, name: str) -> bool:
        return (kind, name) in cls._registry

    @classmethod
    def create(cls, kind: BackendKind, name: str, **kwargs: Any) -> Any:
        """Create a backend instance, or its unavailable variant."""
        constructor = cls._registry.get((kind, name))
        if constructor is None:
            logger.warning("Encoder backend not available", kind=kind.value, name=name)
            return _UNAVAILABLE[kind](f"no '{name}' {kind.value} backend is registered")
        return constructor(**kwargs)


def register_backend(kind: str, name: str, constructor: Callable[..., Any]) -> None:
    """Convenience wrapper accepting the kind as a string."""
    try:
        kind_enum = BackendKind(kind)
    except ValueError:
        raise ValueError(f"Unsupported backend kind: {kind}")
    BackendFactory.register(kind_enum, name, constructor)


def create_backend(kind: str, name: str, **kwargs: Any) -> Any:
    """Convenience function to create a backend by string kind."""
    try:
        kind_enum = BackendKind(kind)
    except ValueError:
        raise ValueError(f"Unsupported backend kind: {kind}")
    return BackendFactory.create(kind_enum, name, **kwargs)


def create_vision_backend(name: str, **kwargs: Any) -> VisionEncoderBackend:
    return BackendFactory.create(BackendKind.VISION, name, **kwargs)


def create_audio_backend(name: str, **kwargs: Any) -> AudioEncoderBackend:
    return BackendFactory.create(BackendKind.AUDIO, name, **kwargs)


def create_global_backend(name: str, **kwargs: Any) -> GlobalBackend:
    return BackendFactory.create(BackendKind.GLOBAL, name, **kwargs)
