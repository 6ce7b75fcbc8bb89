"""Configuration management for multimodal encoders.

This module centralizes environment-driven configuration for the vision and
audio encoder controllers and the ``MultimodalModel`` facade. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly‑typed settings with sensible defaults
- Every field maps to an ``MM_*`` environment variable (case-insensitive)
- Small modality-specific subclasses to keep concerns clear

Usage
- ``config = AudioConfig()`` in the component that needs it
- Or select dynamically: ``config = get_config("vision")``
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by all encoder components.

    Notes
    - Add new shared settings here so modality configs inherit them.
    - Field ``mm_log_level`` is read from ``MM_LOG_LEVEL`` and so on.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    mm_env: str = Field(default="local")

    # Logging
    mm_log_level: str = Field(default="INFO")
    mm_log_format: str = Field(default="json")

    # Observability
    mm_metrics_enabled: bool = Field(default=True)

    # Backend selection (name registered in ``mmlibs.encoders.factory``)
    mm_backend: str = Field(default="native")


class VisionConfig(BaseConfig):
    """Configuration for the vision encoder.

    ``mm_vision_mmproj_path`` points at the multimodal projector that the
    native encoder loads next to the language model.
    """

    mm_vision_model_path: Optional[str] = Field(default=None)
    mm_vision_mmproj_path: Optional[str] = Field(default=None)
    mm_vision_max_images: int = Field(default=4, ge=1)
    mm_image_cache_size: int = Field(default=100, ge=0)


class AudioConfig(BaseConfig):
    """Configuration for the audio encoder and its preprocessing chain."""

    mm_audio_model_path: Optional[str] = Field(default=None)
    mm_audio_target_sample_rate: int = Field(default=16000, gt=0)
    mm_audio_normalize_mode: str = Field(default="peak", pattern="^(peak|rms)$")
    mm_audio_target_rms: float = Field(default=0.1, gt=0.0, le=1.0)
    mm_audio_pre_emphasis: bool = Field(default=False)
    mm_audio_pre_emphasis_factor: float = Field(default=0.97, ge=0.0, lt=1.0)
    mm_audio_n_fft: int = Field(default=400, gt=0)
    mm_audio_hop_length: int = Field(default=160, gt=0)
    mm_audio_n_mels: int = Field(default=80, gt=0)
    mm_audio_language: str = Field(default="auto")
    mm_audio_cache_size: int = Field(default=50, ge=0)


class MultimodalConfig(VisionConfig, AudioConfig):
    """Configuration for the combined ``MultimodalModel`` facade."""

    mm_enable_vision: bool = Field(default=True)
    mm_enable_audio: bool = Field(default=True)


def get_config(kind: str) -> BaseConfig:
    """Get configuration for a specific component.

    Parameters
    - kind: ``vision``, ``audio`` or ``multimodal``

    Returns
    - A concrete ``BaseConfig`` subclass pre‑wired to read the right env vars.
    """
    config_map = {
        "vision": VisionConfig,
        "audio": AudioConfig,
        "multimodal": MultimodalConfig,
    }

    # Default to ``BaseConfig`` to avoid surprising crashes for unknown names.
    config_class = config_map.get(kind, BaseConfig)
    return config_class()
