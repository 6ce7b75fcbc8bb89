"""Media payload types passed through the encoder pipeline.

Two families live here:

- Caller-facing input descriptors (``ImageInput``, ``AudioInput``) that
  describe *where* the media comes from (a path, base64 data, or raw bytes).
  They are pydantic models so host bindings can build them from plain dicts.
- Transient numeric buffers (``RawImage``, ``RawAudio``,
  ``NormalizedTensorBatch``, ``EmbeddingResult``) that carry numpy arrays
  between decoder, preprocessing and backend. These are plain dataclasses;
  nothing holds on to them beyond a single call.
"""

import base64
import hashlib
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field, model_validator


class _MediaInput(BaseModel):
    """Exactly one of ``path``, ``data`` or ``buffer`` must be set."""

    path: Optional[str] = Field(None, description="Path to the media file on disk")
    data: Optional[str] = Field(None, description="Base64 encoded media bytes")
    buffer: Optional[bytes] = Field(None, description="Raw encoded media bytes")
    mime_type: Optional[str] = Field(None, description="MIME type, required for data/buffer")
    id: Optional[str] = Field(None, description="Caller supplied identifier")
    description: Optional[str] = Field(None, description="Free-form caption or note")

    @model_validator(mode="after")
    def _check_source(self):
        sources = [s for s in (self.path, self.data, self.buffer) if s is not None]
        if len(sources) != 1:
            raise ValueError("exactly one of 'path', 'data' or 'buffer' must be provided")
        if self.path is None and not self.mime_type:
            raise ValueError("'mime_type' is required for data and buffer inputs")
        return self

    def read_bytes(self) -> bytes:
        """Return the encoded media bytes regardless of the source kind."""
        if self.path is not None:
            return Path(self.path).read_bytes()
        if self.data is not None:
            return base64.b64decode(self.data, validate=True)
        return self.buffer

    def resolved_mime_type(self) -> Optional[str]:
        """Explicit MIME type, else one guessed from the path suffix."""
        if self.mime_type:
            return self.mime_type
        return _MIME_BY_SUFFIX.get(Path(self.path).suffix.lower())

    def cache_key(self) -> str:
        """Stable identity used by the embedding caches.

        Inline payloads are keyed by a digest of the whole payload.
        """
        if self.path is not None:
            return self.path
        if self.data is not None:
            digest = hashlib.sha256(self.data.encode("utf-8")).hexdigest()
            return f"data:{self.mime_type}:{digest}"
        return f"buffer:{self.mime_type}:{hashlib.sha256(self.buffer).hexdigest()}"


_MIME_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".wav": "audio/wav",
    ".mp3": "audio/mp3",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
}


class ImageInput(_MediaInput):
    """Image to embed."""


class AudioProcessingOptions(BaseModel):
    """Per-request audio processing options."""
    sample_rate: Optional[int] = Field(None, gt=0, description="Override the declared sample rate (Hz)")
    channels: Optional[int] = Field(None, ge=1, description="Interleaved channel count of the samples")
    max_duration: Optional[float] = Field(None, gt=0, description="Duration limit in seconds")
    normalize: bool = Field(True, description="Normalize amplitude before encoding")
    language: Optional[str] = Field(None, description="Language hint for speech recognition")
    generate_transcript: bool = Field(True, description="Return a transcript with the embedding")


class AudioInput(_MediaInput):
    """Audio clip to embed."""
    options: AudioProcessingOptions = Field(default_factory=AudioProcessingOptions)


@dataclass
class RawImage:
    """Decoded pixels as they came out of the decoder.

    ``pixels`` may be flat or shaped ``(height, width, channels)``; the
    vision pipeline validates the length against the declared dimensions.
    """
    pixels: np.ndarray
    width: int
    height: int
    channels: int
    mime_type: Optional[str] = None


@dataclass
class RawAudio:
    """Decoded interleaved float samples."""
    samples: np.ndarray
    sample_rate: int
    channels: int = 1
    mime_type: Optional[str] = None

    @property
    def duration(self) -> float:
        """Clip length in seconds."""
        if self.sample_rate <= 0 or self.channels <= 0:
            return 0.0
        return len(self.samples) / self.channels / self.sample_rate


@dataclass
class NormalizedTensorBatch:
    """Float32 batch in the exact layout the encoder backend expects.

    Vision batches are ``(batch, 3, height, width)``; audio batches are
    ``(batch, samples)`` or ``(batch, n_mels, frames)`` for spectral input.
    """
    data: np.ndarray
    sample_rate: Optional[int] = None

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def batch_size(self) -> int:
        return int(self.data.shape[0]) if self.data.ndim else 0


@dataclass
class AudioEncoding:
    """What an audio backend returns for one clip."""
    embedding: np.ndarray
    transcript: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class EmbeddingResult:
    """Embedding vector plus optional transcript for audio inputs."""
    embedding: np.ndarray
    transcript: Optional[str] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed_at: float = field(default_factory=time.time)

    @property
    def dimensions(self) -> int:
        return int(self.embedding.size)

    def copy(self) -> "EmbeddingResult":
        """Copy that shares no mutable state with this result."""
        return replace(self, embedding=self.embedding.copy(), metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for host bindings."""
        result = {
            "embedding": self.embedding.tolist(),
            "dimensions": self.dimensions,
            "metadata": dict(self.metadata),
            "processed_at": self.processed_at,
        }
        if self.transcript is not None:
            result["transcript"] = self.transcript
        if self.confidence is not None:
            result["confidence"] = self.confidence
        return result
