"""Pixel conversion and batching for the vision encoder.

Every image leaves this module as interleaved 8-bit RGB at its original
width and height, wrapped into a single-entry ``(1, 3, H, W)`` float batch.
Resizing to the encoder resolution is left to the backend's own
preprocessor.

Channel rule
- 1 channel: gray is copied to R, G and B
- 2 channels: R and B come from the first channel, G from the second
- 3 channels: unchanged
- 4+ channels: everything past the third (alpha, extras) is dropped
"""

from typing import Any

import numpy as np
import structlog

from ..encoders.base import ChannelLayoutError, ValidationError
from ..media.types import NormalizedTensorBatch, RawImage
from .retry import RetryConfig, RetryHandler

logger = structlog.get_logger("preprocessing.vision")

SUPPORTED_CHANNELS = (1, 2, 3, 4)
RGB_CHANNELS = 3


def _as_uint8(pixels: Any) -> np.ndarray:
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        return np.frombuffer(pixels, dtype=np.uint8)

    arr = np.asarray(pixels)
    if arr.dtype == np.uint8:
        return arr.ravel()
    if arr.dtype.kind not in "ui":
        raise ValidationError(f"Pixel data must be integer valued, got dtype {arr.dtype}")
    if arr.size and (arr.min() < 0 or arr.max() > 255):
        raise ValidationError("Pixel values must lie in [0, 255]")
    return arr.astype(np.uint8).ravel()


def validate_image(pixels: Any, width: int, height: int, channels: int) -> np.ndarray:
    """Check dimensions against the buffer and return it as flat ``uint8``.

    Raises ``ChannelLayoutError`` when the buffer length fits another
    supported channel count exactly, ``ValidationError`` otherwise.
    """
    if not isinstance(width, (int, np.integer)) or not isinstance(height, (int, np.integer)):
        raise ValidationError("Image width and height must be integers")
    if width <= 0 or height <= 0:
        raise ValidationError(f"Image dimensions must be positive, got {width}x{height}")
    if channels not in SUPPORTED_CHANNELS:
        raise ValidationError(f"Unsupported channel count {channels}; expected one of {SUPPORTED_CHANNELS}")

    flat = _as_uint8(pixels)
    if flat.size == 0:
        raise ValidationError("Image buffer is empty")

    pixel_count = int(width) * int(height)
    expected = pixel_count * channels
    if flat.size != expected:
        if flat.size % pixel_count == 0 and flat.size // pixel_count in SUPPORTED_CHANNELS:
            inferred = flat.size // pixel_count
            raise ChannelLayoutError(
                f"Buffer holds {flat.size} bytes for {width}x{height}; "
                f"declared {channels} channels but data fits {inferred}",
                inferred_channels=inferred,
            )
        raise ValidationError(
            f"Buffer holds {flat.size} bytes, expected {expected} for {width}x{height}x{channels}"
        )
    return flat


def to_rgb(pixels: Any, width: int, height: int, channels: int) -> np.ndarray:
    """Convert interleaved pixels to ``(height, width, 3)`` uint8 RGB."""
    flat = validate_image(pixels, width, height, channels)
    per_pixel = flat.reshape(int(width) * int(height), channels)

    if channels == 1:
        rgb = np.repeat(per_pixel, RGB_CHANNELS, axis=1)
    elif channels == 2:
        rgb = per_pixel[:, [0, 1, 0]]
    else:
        rgb = per_pixel[:, :RGB_CHANNELS]

    return np.ascontiguousarray(rgb.reshape(int(height), int(width), RGB_CHANNELS))


def build_image_batch(rgb: np.ndarray) -> NormalizedTensorBatch:
    """Wrap one RGB image into a ``(1, 3, H, W)`` float32 batch in [0, 1]."""
    if rgb.ndim != 3 or rgb.shape[2] != RGB_CHANNELS:
        raise ValidationError(f"Expected (H, W, 3) RGB image, got shape {rgb.shape}")
    chw = np.transpose(rgb.astype(np.float32) / 255.0, (2, 0, 1))
    return NormalizedTensorBatch(data=chw[np.newaxis, ...])


def prepare_image(raw: RawImage) -> NormalizedTensorBatch:
    """Validate, convert to RGB and batch a decoded image."""
    rgb = to_rgb(raw.pixels, raw.width, raw.height, raw.channels)
    return build_image_batch(rgb)


def _with_inferred_channels(error: ChannelLayoutError, args: tuple, kwargs: dict):
    raw = args[0]
    fixed = RawImage(
        pixels=raw.pixels,
        width=raw.width,
        height=raw.height,
        channels=error.inferred_channels,
        mime_type=raw.mime_type,
    )
    return (fixed,), kwargs


_channel_retry = RetryHandler(RetryConfig(max_attempts=2, retryable_exceptions=(ChannelLayoutError,)))


def prepare_image_with_recovery(raw: RawImage) -> NormalizedTensorBatch:
    """``prepare_image`` that retries once with the inferred channel count.

    Only a channel-count mismatch is recovered; every other failure is
    raised unchanged.
    """
    return _channel_retry.execute_with_retry(
        prepare_image,
        raw,
        operation_name="prepare_image",
        recover=_with_inferred_channels,
    )
