"""Multimodal model facade.

Owns one vision and one audio encoder controller, decodes caller inputs
(path, base64 or raw bytes) into raw buffers, and keeps small FIFO caches
of recent embeddings so repeated inputs skip the encoder entirely.

Notes
- Results handed out are copies; mutating one never affects the caches.
- Encoding runs on worker threads via ``asyncio.to_thread``; the event loop
  only awaits.
- A modality is enabled only when its flag is on *and* its model paths are
  configured; requests to a disabled modality fail with
  ``UnsupportedFormatError``.
- ``dispose()`` releases the encoder contexts but leaves the process-wide
  backend manager alone, since other facades may share it.
"""

import asyncio
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Dict, Optional

import structlog

from .common.config import MultimodalConfig
from .common.logging import configure_logging_from_config
from .common.metrics import MetricsCollector, get_metrics_collector
from .encoders.audio import AudioModel
from .encoders.base import (
    AudioDecoder,
    AudioEncoderBackend,
    DisposedError,
    ImageDecoder,
    UnsupportedFormatError,
    ValidationError,
    VisionEncoderBackend,
)
from .encoders.capabilities import AudioCapabilities, VisionCapabilities
from .encoders.factory import create_audio_backend, create_vision_backend
from .encoders.vision import VisionModel
from .media.decoders import PillowImageDecoder, WavAudioDecoder
from .media.types import AudioInput, EmbeddingResult, ImageInput
from .preprocessing.audio import AudioPreprocessSettings
from .runtime.backend_manager import BackendResourceManager, get_backend_manager

logger = structlog.get_logger("multimodal")


class _FifoCache:
    """Insertion-ordered cache that evicts the oldest entry when full.

    Entries go in and come out as copies, so callers never share state with
    the cache.
    """

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._entries: "OrderedDict[str, EmbeddingResult]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[EmbeddingResult]:
        entry = self._entries.get(key)
        return entry.copy() if entry is not None else None

    def put(self, key: str, value: EmbeddingResult) -> None:
        if self.max_size <= 0:
            return
        if key in self._entries:
            self._entries[key] = value.copy()
            return
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = value.copy()

    def clear(self) -> None:
        self._entries.clear()


class MultimodalModel:
    """Vision + audio embeddings behind one async interface."""

    def __init__(
        self,
        config: Optional[MultimodalConfig] = None,
        vision_backend: Optional[VisionEncoderBackend] = None,
        audio_backend: Optional[AudioEncoderBackend] = None,
        image_decoder: Optional[ImageDecoder] = None,
        audio_decoder: Optional[AudioDecoder] = None,
        backend_manager: Optional[BackendResourceManager] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """Create a facade; nothing is loaded until ``initialize()``.

        Parameters
        - config: ``MultimodalConfig``; read from the environment when omitted
        - vision_backend / audio_backend: backends to use instead of the
          ones registered under ``config.mm_backend``
        - image_decoder / audio_decoder: decoders for encoded inputs
        - backend_manager: process-wide native backend manager
        - metrics: collector for encode and cache metrics
        """
        self.config = config or MultimodalConfig()
        self._metrics = metrics or get_metrics_collector()
        self._backend_manager = backend_manager
        self._image_decoder = image_decoder or PillowImageDecoder()
        self._audio_decoder = audio_decoder or WavAudioDecoder()
        self._disposed = False

        self.vision: Optional[VisionModel] = None
        if (
            self.config.mm_enable_vision
            and self.config.mm_vision_model_path
            and self.config.mm_vision_mmproj_path
        ):
            self.vision = VisionModel(
                self.config.mm_vision_model_path,
                self.config.mm_vision_mmproj_path,
                vision_backend or create_vision_backend(self.config.mm_backend),
                defaults=VisionCapabilities(max_items=self.config.mm_vision_max_images),
                metrics=self._metrics,
            )

        self.audio: Optional[AudioModel] = None
        if self.config.mm_enable_audio and self.config.mm_audio_model_path:
            self.audio = AudioModel(
                self.config.mm_audio_model_path,
                audio_backend or create_audio_backend(self.config.mm_backend),
                settings=AudioPreprocessSettings.from_config(self.config),
                language=self.config.mm_audio_language,
                metrics=self._metrics,
            )

        self._image_cache = _FifoCache(self.config.mm_image_cache_size)
        self._audio_cache = _FifoCache(self.config.mm_audio_cache_size)

    @classmethod
    async def create(cls, config: Optional[MultimodalConfig] = None, **kwargs: Any) -> "MultimodalModel":
        """Build a facade, configure logging from its config and initialize it."""
        model = cls(config, **kwargs)
        configure_logging_from_config(model.config)
        await model.initialize()
        return model

    async def initialize(self) -> None:
        """Initialize the native backend, then load every enabled encoder."""
        self._ensure_not_disposed()
        try:
            if self._backend_manager is None:
                self._backend_manager = get_backend_manager()
            await self._backend_manager.init()

            loads = [asyncio.to_thread(c.load) for c in (self.vision, self.audio) if c is not None]
            await asyncio.gather(*loads)

            logger.info(
                "Multimodal model initialized",
                vision=self.vision is not None,
                audio=self.audio is not None
            )
        except Exception as e:
            logger.error("Failed to initialize multimodal model", error=str(e))
            raise

    async def process_image(self, image: ImageInput) -> EmbeddingResult:
        """Embed one image.

        Parameters
        - image: ``ImageInput`` with a path, base64 data or raw buffer

        Returns
        - ``EmbeddingResult``; a copy of the cached result on a hit
        """
        self._ensure_not_disposed()
        if self.vision is None:
            raise UnsupportedFormatError("Vision support not enabled")

        key = image.cache_key()
        cached = self._image_cache.get(key)
        if cached is not None:
            self._metrics.record_cache_hit("image")
            return cached
        self._metrics.record_cache_miss("image")

        try:
            data = await asyncio.to_thread(_read_input, image)
            mime_type = _require_mime(image)
            raw = await asyncio.to_thread(self._image_decoder.decode, data, mime_type)
            result = await asyncio.to_thread(self.vision.process_media, raw)
        except Exception as e:
            logger.error("Failed to process image", image_id=image.id, error=str(e))
            raise

        result.metadata.update(_describe_input(image))
        self._image_cache.put(key, result)
        return result

    async def process_audio(
        self,
        audio: AudioInput,
        generate_transcript: Optional[bool] = None,
        language: Optional[str] = None
    ) -> EmbeddingResult:
        """Embed one audio clip and optionally transcribe it.

        ``generate_transcript`` and ``language`` override the values in
        ``audio.options`` when given.
        """
        self._ensure_not_disposed()
        if self.audio is None:
            raise UnsupportedFormatError("Audio support not enabled")

        options = audio.options
        if generate_transcript is None:
            generate_transcript = options.generate_transcript
        language = language or options.language

        key = "|".join([
            audio.cache_key(),
            options.model_dump_json(exclude={"generate_transcript", "language"}),
            f"transcript={generate_transcript}",
            f"language={language}",
        ])
        cached = self._audio_cache.get(key)
        if cached is not None:
            self._metrics.record_cache_hit("audio")
            return cached
        self._metrics.record_cache_miss("audio")

        try:
            data = await asyncio.to_thread(_read_input, audio)
            mime_type = _require_mime(audio)
            raw = await asyncio.to_thread(self._audio_decoder.decode, data, mime_type)
            if options.sample_rate is not None:
                raw = replace(raw, sample_rate=options.sample_rate)
            if options.channels is not None:
                raw = replace(raw, channels=options.channels)
            result = await asyncio.to_thread(
                self.audio.process_media,
                raw,
                language=language,
                generate_transcript=generate_transcript,
                normalize=options.normalize,
                max_duration=options.max_duration,
            )
        except Exception as e:
            logger.error("Failed to process audio", audio_id=audio.id, error=str(e))
            raise

        result.metadata.update(_describe_input(audio))
        self._audio_cache.put(key, result)
        return result

    def get_capabilities(self) -> Dict[str, Dict[str, Any]]:
        """Capabilities of both modalities with a ``supported`` flag each."""
        self._ensure_not_disposed()
        vision = self.vision.get_capabilities() if self.vision else VisionCapabilities()
        audio = self.audio.get_capabilities() if self.audio else AudioCapabilities()
        return {
            "vision": {**vision.to_dict(), "supported": _is_supported(self.vision)},
            "audio": {**audio.to_dict(), "supported": _is_supported(self.audio)},
        }

    def clear_image_cache(self) -> None:
        self._image_cache.clear()

    def clear_audio_cache(self) -> None:
        self._audio_cache.clear()

    @property
    def cached_image_count(self) -> int:
        return len(self._image_cache)

    @property
    def cached_audio_count(self) -> int:
        return len(self._audio_cache)

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    async def dispose(self) -> None:
        """Release both encoders and drop the caches; idempotent."""
        if self._disposed:
            return
        self._disposed = True
        self._image_cache.clear()
        self._audio_cache.clear()
        for controller in (self.vision, self.audio):
            if controller is not None:
                await asyncio.to_thread(controller.dispose)
        logger.info("Multimodal model disposed")

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise DisposedError("Multimodal model has been disposed")


def _read_input(media) -> bytes:
    try:
        return media.read_bytes()
    except (OSError, ValueError) as e:
        raise ValidationError(f"Could not read media input: {e}") from e


def _require_mime(media) -> str:
    mime_type = media.resolved_mime_type()
    if not mime_type:
        raise UnsupportedFormatError(f"Cannot determine the media type of {media.path!r}")
    return mime_type


def _describe_input(media) -> Dict[str, Any]:
    described = {}
    if media.id is not None:
        described["id"] = media.id
    if media.description is not None:
        described["description"] = media.description
    return described


def _is_supported(controller) -> bool:
    return controller is not None and controller.backend_available and not controller.is_disposed
