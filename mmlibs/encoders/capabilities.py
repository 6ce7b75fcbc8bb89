"""Capability descriptors for vision and audio encoders.

Before a model is loaded the registry serves the static defaults below.
After a successful load the controller feeds it the backend's ``describe``
report, which overwrites the limits the backend knows concretely. Readers
always get an immutable snapshot.
"""

import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, Generic, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger("encoders.capabilities")


@dataclass(frozen=True)
class VisionCapabilities:
    max_items: int = 4
    supported_formats: FrozenSet[str] = frozenset({"image/jpeg", "image/png", "image/webp", "image/bmp"})
    max_resolution: Tuple[int, int] = (1344, 1344)
    supports_generation: bool = False
    embedding_dimensions: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_items": self.max_items,
            "supported_formats": sorted(self.supported_formats),
            "max_resolution": {"width": self.max_resolution[0], "height": self.max_resolution[1]},
            "supports_generation": self.supports_generation,
            "embedding_dimensions": self.embedding_dimensions,
        }


@dataclass(frozen=True)
class AudioCapabilities:
    max_items: int = 1
    supported_formats: FrozenSet[str] = frozenset({"audio/wav", "audio/mp3", "audio/flac", "audio/ogg"})
    max_duration: float = 300.0
    supported_sample_rates: FrozenSet[int] = frozenset({16000, 22050, 44100, 48000})
    supported_languages: FrozenSet[str] = frozenset({"en", "es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh"})
    supports_generation: bool = False
    supports_speech_to_text: bool = True
    required_sample_rate: int = 16000
    spectral_features: bool = False
    embedding_dimensions: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_items": self.max_items,
            "supported_formats": sorted(self.supported_formats),
            "max_duration": self.max_duration,
            "supported_sample_rates": sorted(self.supported_sample_rates),
            "supported_languages": sorted(self.supported_languages),
            "supports_generation": self.supports_generation,
            "supports_speech_to_text": self.supports_speech_to_text,
            "required_sample_rate": self.required_sample_rate,
            "spectral_features": self.spectral_features,
            "embedding_dimensions": self.embedding_dimensions,
        }


CapsT = TypeVar("CapsT", VisionCapabilities, AudioCapabilities)


def _vision_overrides(report: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    size = report.get("image_size")
    if isinstance(size, int) and size > 0:
        overrides["max_resolution"] = (size, size)
    return overrides


def _audio_overrides(report: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if report.get("sample_rates"):
        overrides["supported_sample_rates"] = frozenset(int(r) for r in report["sample_rates"])
    if report.get("languages"):
        overrides["supported_languages"] = frozenset(report["languages"])
    if report.get("sample_rate"):
        overrides["required_sample_rate"] = int(report["sample_rate"])
    if report.get("max_duration"):
        overrides["max_duration"] = float(report["max_duration"])
    if "spectral_features" in report:
        overrides["spectral_features"] = bool(report["spectral_features"])
    if "speech_to_text" in report:
        overrides["supports_speech_to_text"] = bool(report["speech_to_text"])
    return overrides


class CapabilityRegistry(Generic[CapsT]):
    """Holds the current capability snapshot for one encoder."""

    def __init__(self, defaults: CapsT):
        self._defaults = defaults
        self._current = defaults
        self._lock = threading.Lock()

    def get_capabilities(self) -> CapsT:
        return self._current

    def supports_format(self, mime_type: Optional[str]) -> bool:
        return mime_type in self._current.supported_formats

    def resolve(self, report: Dict[str, Any]) -> CapsT:
        """Snapshot a backend report describes, without publishing it.

        Malformed values raise ``ValueError`` or ``TypeError``.
        """
        if isinstance(self._defaults, VisionCapabilities):
            overrides = _vision_overrides(report)
        else:
            overrides = _audio_overrides(report)

        if isinstance(report.get("max_items"), int) and report["max_items"] > 0:
            overrides["max_items"] = report["max_items"]
        dim = report.get("embedding_dim")
        if isinstance(dim, int) and dim > 0:
            overrides["embedding_dimensions"] = dim

        return replace(self._defaults, **overrides)

    def publish(self, capabilities: CapsT) -> CapsT:
        with self._lock:
            self._current = capabilities
        logger.info("Capabilities refreshed from backend", kind=type(capabilities).__name__)
        return capabilities

    def refresh(self, report: Dict[str, Any]) -> CapsT:
        """Overwrite defaults with the limits a loaded backend reported."""
        return self.publish(self.resolve(report))

    def reset(self) -> CapsT:
        with self._lock:
            self._current = self._defaults
        return self._current
