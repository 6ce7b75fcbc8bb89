"""Decoders from encoded media bytes to raw pixel/sample buffers."""

import io
from typing import FrozenSet

import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError
from scipy.io import wavfile

from ..encoders.base import AudioDecoder, ImageDecoder, UnsupportedFormatError, ValidationError
from .types import RawAudio, RawImage

logger = structlog.get_logger("media.decoders")

# Pillow modes that map directly onto an interleaved 8-bit layout
_PASSTHROUGH_MODES = {"L": 1, "LA": 2, "RGB": 3, "RGBA": 4}

_MIME_BY_PIL_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


class PillowImageDecoder(ImageDecoder):
    """Decode JPEG/PNG/WebP/BMP/TIFF with Pillow."""

    supported_mime_types: FrozenSet[str] = frozenset({
        "image/jpeg", "image/jpg", "image/png", "image/webp", "image/bmp", "image/tiff",
    })

    def decode(self, data: bytes, mime_type: str) -> RawImage:
        if not self.supports(mime_type):
            raise UnsupportedFormatError(f"Image format {mime_type} is not supported")
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                fmt = image.format
                if image.mode not in _PASSTHROUGH_MODES:
                    image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
                pixels = np.asarray(image, dtype=np.uint8)
                mode = image.mode
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.error("Failed to decode image", mime_type=mime_type, error=str(e))
            raise ValidationError(f"Could not decode {mime_type} image: {e}") from e

        height, width = pixels.shape[:2]
        return RawImage(
            pixels=pixels.reshape(-1),
            width=width,
            height=height,
            channels=_PASSTHROUGH_MODES[mode],
            mime_type=_MIME_BY_PIL_FORMAT.get(fmt, mime_type),
        )


class WavAudioDecoder(AudioDecoder):
    """Decode PCM or float WAV files with ``scipy.io.wavfile``."""

    supported_mime_types: FrozenSet[str] = frozenset({"audio/wav", "audio/wave", "audio/x-wav"})

    def decode(self, data: bytes, mime_type: str) -> RawAudio:
        if not self.supports(mime_type):
            raise UnsupportedFormatError(f"Audio format {mime_type} is not supported")
        try:
            sample_rate, samples = wavfile.read(io.BytesIO(data))
        except (ValueError, OSError) as e:
            logger.error("Failed to decode audio", mime_type=mime_type, error=str(e))
            raise ValidationError(f"Could not decode {mime_type} audio: {e}") from e

        channels = 1 if samples.ndim == 1 else samples.shape[1]
        return RawAudio(
            samples=_to_float(samples).reshape(-1),
            sample_rate=int(sample_rate),
            channels=channels,
            mime_type="audio/wav",
        )


def _to_float(samples: np.ndarray) -> np.ndarray:
    """Scale integer PCM into [-1, 1]."""
    if samples.dtype == np.uint8:
        return (samples.astype(np.float32) - 128.0) / 128.0
    if np.issubdtype(samples.dtype, np.integer):
        return samples.astype(np.float32) / float(-np.iinfo(samples.dtype).min)
    return samples.astype(np.float32)
