"""Audio encoder controller.

Besides the shared lifecycle, the audio controller carries two pieces of
mutable metadata, the processing sample rate and the recognition language.
Both are validated against the current capabilities and never touch the
backend.
"""

import math
from dataclasses import replace
from typing import Any, Optional

import structlog

from ..common.metrics import MetricsCollector
from ..media.types import EmbeddingResult, RawAudio
from ..preprocessing.audio import AudioPreprocessSettings, prepare_audio
from .base import AudioEncoderBackend, EncodeError, UnsupportedFormatError, ValidationError
from .capabilities import AudioCapabilities, CapabilityRegistry
from .lifecycle import ModelLifecycleController, check_embedding

logger = structlog.get_logger("encoders.audio")

AUTO_LANGUAGE = "auto"


class AudioModel(ModelLifecycleController):
    """Lifecycle controller for a speech/audio encoder."""

    modality = "audio"

    def __init__(
        self,
        model_path: str,
        backend: AudioEncoderBackend,
        settings: Optional[AudioPreprocessSettings] = None,
        language: str = AUTO_LANGUAGE,
        defaults: Optional[AudioCapabilities] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        super().__init__(
            model_path,
            backend,
            CapabilityRegistry(defaults or AudioCapabilities()),
            metrics=metrics,
        )
        self._settings = settings or AudioPreprocessSettings()
        self._sample_rate = self._settings.target_sample_rate
        self._sample_rate_set = False
        self._language = AUTO_LANGUAGE
        if language != AUTO_LANGUAGE:
            self.set_language(language)

    def load(self) -> bool:
        """Load, then adopt the backend's required rate unless one was set explicitly."""
        loaded = super().load()
        if not self._sample_rate_set:
            self._sample_rate = self.get_capabilities().required_sample_rate
        return loaded

    @property
    def sample_rate(self) -> int:
        """Rate every clip is resampled to before encoding."""
        return self._sample_rate

    @property
    def language(self) -> str:
        return self._language

    def set_sample_rate(self, rate: int) -> None:
        self._ensure_not_disposed()
        supported = self.get_capabilities().supported_sample_rates
        if rate not in supported:
            raise ValidationError(
                f"Sample rate {rate} is not supported; expected one of {sorted(supported)}"
            )
        self._sample_rate = int(rate)
        self._sample_rate_set = True
        logger.debug("Audio sample rate set", sample_rate=rate, model_path=self.model_path)

    def set_language(self, language: str) -> None:
        self._ensure_not_disposed()
        self._validate_language(language)
        self._language = language
        logger.debug("Audio language set", language=language, model_path=self.model_path)

    def _validate_language(self, language: str) -> None:
        if language == AUTO_LANGUAGE:
            return
        supported = self.get_capabilities().supported_languages
        if language not in supported:
            raise ValidationError(
                f"Language {language!r} is not supported; expected one of {sorted(supported)}"
            )

    def process_audio(
        self,
        samples: Any,
        source_rate: int,
        channels: int = 1,
        language: Optional[str] = None,
        generate_transcript: bool = True
    ) -> EmbeddingResult:
        """Embed one clip of interleaved float samples at ``source_rate``."""
        raw = RawAudio(samples=samples, sample_rate=source_rate, channels=channels)
        return self.process_media(raw, language=language, generate_transcript=generate_transcript)

    def process_media(
        self,
        raw: RawAudio,
        language: Optional[str] = None,
        generate_transcript: bool = True,
        normalize: bool = True,
        max_duration: Optional[float] = None
    ) -> EmbeddingResult:
        with self._use_context() as context, self._measure_encode():
            caps = self.get_capabilities()
            if raw.mime_type is not None and not self._capabilities.supports_format(raw.mime_type):
                raise UnsupportedFormatError(f"Audio format {raw.mime_type} is not supported")

            language = language or self._language
            self._validate_language(language)

            limit = caps.max_duration if max_duration is None else min(caps.max_duration, max_duration)
            settings = replace(
                self._settings,
                target_sample_rate=self._sample_rate,
                spectral_features=caps.spectral_features,
                max_duration=limit,
                normalize_mode=self._settings.normalize_mode if normalize else None,
            )
            batch = prepare_audio(raw, settings)

            encoded = self._call_backend(
                self._backend.encode,
                context,
                batch,
                language=language,
                generate_transcript=generate_transcript,
            )
            if encoded is None:
                raise EncodeError("Audio backend returned no result")
            embedding = check_embedding(encoded.embedding)
            confidence = encoded.confidence
            if confidence is not None and not (math.isfinite(confidence) and 0.0 <= confidence <= 1.0):
                raise EncodeError(f"Audio backend returned confidence {confidence} outside [0, 1]")

        return EmbeddingResult(
            embedding=embedding,
            transcript=encoded.transcript if generate_transcript else None,
            confidence=confidence if generate_transcript else None,
            metadata={
                "duration": raw.duration,
                "sample_rate": self._sample_rate,
                "source_sample_rate": raw.sample_rate,
                "channels": raw.channels,
                "language": language,
                "model": self.model_path,
            },
        )
