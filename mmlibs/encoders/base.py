"""Encoder backend interfaces.

Defines the contracts the lifecycle controllers depend on, independent of
the native implementation behind them (a CLIP-style vision projector, a
Whisper-style audio model, or an unavailable stand-in).

Native contexts are opaque to this package: a backend hands one out from
``create_context`` and gets the same object back for every later call
until ``free_context``. Controllers never free a context twice and never
pass a context to a backend after freeing it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional

import numpy as np

from ..media.types import AudioEncoding, NormalizedTensorBatch, RawAudio, RawImage


class EncoderBackend(ABC):
    """Abstract base class for per-model encoder backends.

    ``describe`` reports concrete limits of a loaded context. Recognised keys
    are ``image_size``, ``embedding_dim``, ``max_items``, ``sample_rate``,
    ``sample_rates``, ``languages``, ``max_duration`` and
    ``spectral_features``; unknown keys are ignored.
    """

    name: str = "abstract"
    available: bool = True

    @abstractmethod
    def create_context(self, model_path: str, mmproj_path: Optional[str] = None) -> Any:
        """Create the native context for ``model_path``.

        Implementations release anything they created before raising.
        """
        pass

    @abstractmethod
    def free_context(self, context: Any) -> None:
        """Release a context returned by ``create_context``."""
        pass

    @abstractmethod
    def describe(self, context: Any) -> Dict[str, Any]:
        """Report the limits of a loaded context."""
        pass


class VisionEncoderBackend(EncoderBackend):
    """Vision encoder: resizes with its own preprocessor, then encodes."""

    @abstractmethod
    def preprocess(self, context: Any, batch: NormalizedTensorBatch) -> NormalizedTensorBatch:
        """Resize/letterbox a ``(1, 3, H, W)`` batch to the encoder resolution.

        May return an empty batch when the image could not be prepared.
        """
        pass

    @abstractmethod
    def encode(self, context: Any, batch: NormalizedTensorBatch) -> np.ndarray:
        """Return the flat float embedding buffer for ``batch``."""
        pass


class AudioEncoderBackend(EncoderBackend):
    """Audio encoder with optional speech-to-text."""

    @abstractmethod
    def encode(
        self,
        context: Any,
        batch: NormalizedTensorBatch,
        language: str = "auto",
        generate_transcript: bool = True
    ) -> AudioEncoding:
        """Return embedding, transcript and transcript confidence."""
        pass


class GlobalBackend(ABC):
    """Process-wide native runtime shared by every encoder context."""

    @abstractmethod
    def init(self) -> None:
        """Initialise global backend state (slow; runs on a worker thread)."""
        pass

    @abstractmethod
    def free(self) -> None:
        """Tear down global backend state."""
        pass


class MediaDecoder(ABC):
    """File-format decoder turning encoded bytes into raw buffers."""

    supported_mime_types: FrozenSet[str] = frozenset()

    def supports(self, mime_type: Optional[str]) -> bool:
        return mime_type in self.supported_mime_types

    @abstractmethod
    def decode(self, data: bytes, mime_type: str) -> Any:
        """Decode ``data`` into a ``RawImage`` or ``RawAudio``."""
        pass


class ImageDecoder(MediaDecoder):
    @abstractmethod
    def decode(self, data: bytes, mime_type: str) -> RawImage:
        pass


class AudioDecoder(MediaDecoder):
    @abstractmethod
    def decode(self, data: bytes, mime_type: str) -> RawAudio:
        pass


class MultimodalError(Exception):
    """Base exception for encoder operations."""
    pass


class ValidationError(MultimodalError, ValueError):
    """Malformed or unsupported input, or an out-of-range parameter."""
    pass


class ChannelLayoutError(ValidationError):
    """Pixel buffer length matches a different channel count than declared."""

    def __init__(self, message: str, inferred_channels: int):
        super().__init__(message)
        self.inferred_channels = inferred_channels


class NotLoadedError(MultimodalError):
    """Operation attempted before a successful load."""
    pass


class DisposedError(MultimodalError):
    """Operation attempted after disposal."""
    pass


class AlreadyDisposedError(DisposedError):
    """Load attempted on a disposed model."""
    pass


class BackendInitError(MultimodalError):
    """Native context creation failed."""
    pass


class EncodeError(MultimodalError):
    """Backend produced empty or invalid output."""
    pass


class UnsupportedFormatError(MultimodalError):
    """Backend or decoder support for the requested media is not available."""
    pass
