"""Vision encoder controller.

Turns raw pixels into an embedding: channel conversion and batching happen
here, resizing to the encoder resolution happens in the backend's own
preprocessor, and the backend's projector produces the embedding.
"""

from typing import Any, Optional

import structlog

from ..common.metrics import MetricsCollector
from ..media.types import EmbeddingResult, RawImage
from ..preprocessing.vision import prepare_image_with_recovery
from .base import EncodeError, UnsupportedFormatError, ValidationError, VisionEncoderBackend
from .capabilities import CapabilityRegistry, VisionCapabilities
from .lifecycle import ModelLifecycleController, check_embedding

logger = structlog.get_logger("encoders.vision")


class VisionModel(ModelLifecycleController):
    """Lifecycle controller for a vision encoder (model + mmproj projector)."""

    modality = "vision"

    def __init__(
        self,
        model_path: str,
        mmproj_path: str,
        backend: VisionEncoderBackend,
        defaults: Optional[VisionCapabilities] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        if not mmproj_path:
            raise ValidationError("mmproj path must be provided for a vision model")
        super().__init__(
            model_path,
            backend,
            CapabilityRegistry(defaults or VisionCapabilities()),
            mmproj_path=mmproj_path,
            metrics=metrics,
        )

    def process_image(self, pixels: Any, width: int, height: int, channels: int = 3) -> EmbeddingResult:
        """Embed one image given as interleaved 8-bit pixels."""
        return self.process_media(RawImage(pixels=pixels, width=width, height=height, channels=channels))

    def process_media(self, raw: RawImage) -> EmbeddingResult:
        with self._use_context() as context, self._measure_encode():
            if raw.mime_type is not None and not self._capabilities.supports_format(raw.mime_type):
                raise UnsupportedFormatError(f"Image format {raw.mime_type} is not supported")

            batch = prepare_image_with_recovery(raw)
            processed = self._call_backend(self._backend.preprocess, context, batch)
            if processed is None or processed.batch_size < 1:
                raise EncodeError("No preprocessed images available")

            embedding = check_embedding(self._call_backend(self._backend.encode, context, processed))

        return EmbeddingResult(
            embedding=embedding,
            metadata={
                "original_width": raw.width,
                "original_height": raw.height,
                "model": self.model_path,
            },
        )
