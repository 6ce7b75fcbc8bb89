"""Audio resampling, normalization and feature extraction.

All functions are pure and operate on 1-D float32 numpy arrays. Malformed
input (empty, NaN/Inf samples, non-positive sample rate) is rejected with
``ValidationError`` before anything reaches the backend.

The chain applied by ``prepare_audio`` is:

    validate -> mono -> duration check -> linear resample -> normalize
    -> optional pre-emphasis -> optional log-mel spectrogram -> batch
"""

import math
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import structlog

from ..encoders.base import ValidationError
from ..media.types import NormalizedTensorBatch, RawAudio

logger = structlog.get_logger("preprocessing.audio")

NORMALIZE_MODES = ("peak", "rms")
LOG_FLOOR = 1e-10


def validate_sample_rate(sample_rate: Any) -> int:
    if isinstance(sample_rate, bool) or not isinstance(sample_rate, (int, float, np.integer, np.floating)):
        raise ValidationError(f"Sample rate must be a number, got {sample_rate!r}")
    if not math.isfinite(sample_rate) or sample_rate <= 0:
        raise ValidationError(f"Sample rate must be positive, got {sample_rate}")
    if float(sample_rate) != int(sample_rate):
        raise ValidationError(f"Sample rate must be a whole number of Hz, got {sample_rate}")
    return int(sample_rate)


def validate_samples(samples: Any, sample_rate: Any) -> np.ndarray:
    """Return ``samples`` as a flat float32 array or raise ``ValidationError``."""
    validate_sample_rate(sample_rate)
    try:
        arr = np.asarray(samples, dtype=np.float32).ravel()
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Audio samples are not numeric: {e}") from e
    if arr.size == 0:
        raise ValidationError("Audio buffer is empty")
    if not np.all(np.isfinite(arr)):
        raise ValidationError("Audio buffer contains NaN or Inf samples")
    return arr


def to_mono(samples: np.ndarray, channels: int) -> np.ndarray:
    """Average interleaved channels down to one."""
    if channels < 1:
        raise ValidationError(f"Channel count must be positive, got {channels}")
    if channels == 1:
        return samples
    if samples.size % channels:
        raise ValidationError(
            f"{samples.size} interleaved samples do not divide into {channels} channels"
        )
    return samples.reshape(-1, channels).mean(axis=1).astype(np.float32)


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Resample by linear interpolation.

    Output length is ``round(len(samples) * target_rate / source_rate)``.
    """
    source_rate = validate_sample_rate(source_rate)
    target_rate = validate_sample_rate(target_rate)
    if source_rate == target_rate:
        return samples.astype(np.float32, copy=True)

    n_in = samples.size
    n_out = max(1, int(round(n_in * target_rate / source_rate)))
    positions = np.arange(n_out, dtype=np.float64) * (source_rate / target_rate)
    resampled = np.interp(positions, np.arange(n_in, dtype=np.float64), samples)
    return resampled.astype(np.float32)


def normalize(samples: np.ndarray, mode: str = "peak", target_rms: float = 0.1) -> np.ndarray:
    """Scale amplitude into [-1, 1].

    ``peak`` maps the largest absolute sample to 1.0. ``rms`` scales to
    ``target_rms`` but never past a unit peak. Silence is returned as-is.
    """
    if mode not in NORMALIZE_MODES:
        raise ValidationError(f"Unknown normalize mode {mode!r}; expected one of {NORMALIZE_MODES}")

    peak = float(np.max(np.abs(samples)))
    if peak == 0.0:
        return samples.astype(np.float32, copy=True)

    if mode == "peak":
        scale = 1.0 / peak
    else:
        rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
        scale = min(target_rms / rms, 1.0 / peak)

    return np.clip(samples * scale, -1.0, 1.0).astype(np.float32)


def pre_emphasis(samples: np.ndarray, factor: float = 0.97) -> np.ndarray:
    """First-order high-pass: ``y[n] = x[n] - factor * x[n-1]``."""
    if not 0.0 <= factor < 1.0:
        raise ValidationError(f"Pre-emphasis factor must be in [0, 1), got {factor}")
    out = np.empty_like(samples, dtype=np.float32)
    out[0] = samples[0]
    out[1:] = samples[1:] - factor * samples[:-1]
    return out


def hz_to_mel(hz):
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel):
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


def mel_filterbank(
    sample_rate: int,
    n_fft: int,
    n_mels: int,
    f_min: float = 0.0,
    f_max: Optional[float] = None
) -> np.ndarray:
    """Triangular HTK-scale filterbank of shape ``(n_mels, n_fft // 2 + 1)``."""
    f_max = f_max or sample_rate / 2.0
    n_freqs = n_fft // 2 + 1
    fft_freqs = np.linspace(0.0, sample_rate / 2.0, n_freqs)
    hz_points = mel_to_hz(np.linspace(hz_to_mel(f_min), hz_to_mel(f_max), n_mels + 2))

    lower = hz_points[:-2, np.newaxis]
    center = hz_points[1:-1, np.newaxis]
    upper = hz_points[2:, np.newaxis]

    rising = (fft_freqs - lower) / np.maximum(center - lower, np.finfo(np.float64).eps)
    falling = (upper - fft_freqs) / np.maximum(upper - center, np.finfo(np.float64).eps)
    return np.maximum(0.0, np.minimum(rising, falling)).astype(np.float32)


def mel_spectrogram(
    samples: np.ndarray,
    sample_rate: int,
    n_fft: int = 400,
    hop_length: int = 160,
    n_mels: int = 80
) -> np.ndarray:
    """Log10 mel power spectrogram of shape ``(n_mels, frames)``."""
    samples = validate_samples(samples, sample_rate)
    if n_fft <= 0 or hop_length <= 0 or n_mels <= 0:
        raise ValidationError("n_fft, hop_length and n_mels must be positive")

    if samples.size < n_fft:
        samples = np.pad(samples, (0, n_fft - samples.size))

    frames = np.lib.stride_tricks.sliding_window_view(samples, n_fft)[::hop_length]
    window = np.hanning(n_fft + 1)[:-1].astype(np.float32)
    power = np.abs(np.fft.rfft(frames * window, n=n_fft, axis=1)) ** 2

    mel = mel_filterbank(sample_rate, n_fft, n_mels) @ power.T
    return np.log10(np.maximum(mel, LOG_FLOOR)).astype(np.float32)


@dataclass
class AudioPreprocessSettings:
    """Knobs for ``prepare_audio``; usually built from ``AudioConfig``."""
    target_sample_rate: int = 16000
    normalize_mode: Optional[str] = "peak"
    target_rms: float = 0.1
    pre_emphasis_factor: Optional[float] = None
    spectral_features: bool = False
    n_fft: int = 400
    hop_length: int = 160
    n_mels: int = 80
    max_duration: Optional[float] = None

    @classmethod
    def from_config(cls, config) -> "AudioPreprocessSettings":
        return cls(
            target_sample_rate=config.mm_audio_target_sample_rate,
            normalize_mode=config.mm_audio_normalize_mode,
            target_rms=config.mm_audio_target_rms,
            pre_emphasis_factor=config.mm_audio_pre_emphasis_factor if config.mm_audio_pre_emphasis else None,
            n_fft=config.mm_audio_n_fft,
            hop_length=config.mm_audio_hop_length,
            n_mels=config.mm_audio_n_mels,
        )


def prepare_audio(raw: RawAudio, settings: Optional[AudioPreprocessSettings] = None) -> NormalizedTensorBatch:
    """Run the full audio chain and return a single-entry batch."""
    settings = settings or AudioPreprocessSettings()

    samples = validate_samples(raw.samples, raw.sample_rate)
    mono = to_mono(samples, raw.channels)

    duration = mono.size / raw.sample_rate
    if settings.max_duration is not None and duration > settings.max_duration:
        raise ValidationError(
            f"Audio is {duration:.1f}s long; maximum supported is {settings.max_duration:.1f}s"
        )

    waveform = resample_linear(mono, raw.sample_rate, settings.target_sample_rate)
    if settings.normalize_mode:
        waveform = normalize(waveform, settings.normalize_mode, settings.target_rms)
    if settings.pre_emphasis_factor is not None:
        waveform = pre_emphasis(waveform, settings.pre_emphasis_factor)

    if settings.spectral_features:
        features = mel_spectrogram(
            waveform,
            settings.target_sample_rate,
            n_fft=settings.n_fft,
            hop_length=settings.hop_length,
            n_mels=settings.n_mels,
        )
    else:
        features = waveform

    logger.debug(
        "Audio prepared",
        source_rate=raw.sample_rate,
        target_rate=settings.target_sample_rate,
        duration=duration,
        spectral=settings.spectral_features,
    )
    return NormalizedTensorBatch(data=features[np.newaxis, ...], sample_rate=settings.target_sample_rate)
