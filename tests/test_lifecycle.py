"""Tests for the vision and audio encoder lifecycles."""

import threading

import numpy as np
import pytest

from mmlibs.encoders.audio import AudioModel
from mmlibs.encoders.base import (
    AlreadyDisposedError,
    BackendInitError,
    DisposedError,
    EncodeError,
    NotLoadedError,
    UnsupportedFormatError,
    ValidationError,
)
from mmlibs.encoders.factory import create_audio_backend, create_vision_backend
from mmlibs.encoders.lifecycle import ModelState, check_embedding
from mmlibs.encoders.vision import VisionModel
from mmlibs.media.types import RawImage

from .conftest import FakeAudioBackend, FakeVisionBackend

GRAY_2X2 = bytes([200, 10, 0, 255])


@pytest.fixture
def vision(vision_backend, metrics):
    return VisionModel("vision.gguf", "mmproj.gguf", vision_backend, metrics=metrics)


@pytest.fixture
def audio(audio_backend, metrics):
    return AudioModel("whisper.gguf", audio_backend, metrics=metrics)


def _sine(rate=16000, seconds=0.5):
    t = np.arange(int(rate * seconds)) / rate
    return (0.5 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)


def test_constructor_validates_paths(vision_backend):
    """Test path validation."""
    with pytest.raises(ValidationError):
        VisionModel("", "mmproj.gguf", vision_backend)
    with pytest.raises(ValidationError):
        VisionModel("vision.gguf", "", vision_backend)


def test_load_creates_one_context(vision, vision_backend):
    """Test that repeated loads are no-ops."""
    assert vision.state is ModelState.UNINITIALIZED
    assert vision.load() is True
    assert vision.load() is True
    assert vision.is_loaded
    assert len(vision_backend.created) == 1
    assert vision_backend.created[0].mmproj_path == "mmproj.gguf"


def test_process_before_load_raises_not_loaded(vision):
    """Test encoding before load."""
    with pytest.raises(NotLoadedError):
        vision.process_image(GRAY_2X2, 2, 2, 1)


def test_process_image(vision, vision_backend):
    """Test the happy path."""
    vision.load()
    result = vision.process_image(GRAY_2X2, 2, 2, 1)
    assert result.dimensions == 8
    assert result.embedding.dtype == np.float32
    assert result.metadata["original_width"] == 2
    assert result.metadata["model"] == "vision.gguf"
    assert vision_backend.batches[0].shape == (1, 3, 2, 2)


def test_process_image_recovers_channel_layout(vision, vision_backend):
    """RGBA data declared as RGB still encodes."""
    vision.load()
    result = vision.process_image(bytes(16), 2, 2, 3)
    assert result.dimensions == 8


def test_process_media_rejects_unsupported_mime(vision):
    """Test mime validation against capabilities."""
    vision.load()
    raw = RawImage(pixels=GRAY_2X2, width=2, height=2, channels=1, mime_type="image/gif")
    with pytest.raises(UnsupportedFormatError):
        vision.process_media(raw)


def test_empty_preprocess_is_encode_error(metrics):
    """Test that an empty preprocessed batch fails."""
    model = VisionModel("v", "p", FakeVisionBackend(empty_preprocess=True), metrics=metrics)
    model.load()
    with pytest.raises(EncodeError):
        model.process_image(GRAY_2X2, 2, 2, 1)


@pytest.mark.parametrize("output", [np.array([]), np.array([1.0, np.nan]), None])
def test_invalid_backend_output_is_encode_error(output, metrics):
    """Test empty and non-finite embeddings."""
    backend = FakeVisionBackend()
    backend.output = output
    if output is None:
        backend.encode = lambda context, batch: None
    model = VisionModel("v", "p", backend, metrics=metrics)
    model.load()
    with pytest.raises(EncodeError):
        model.process_image(GRAY_2X2, 2, 2, 1)


def test_check_embedding_flattens():
    """Test output normalization."""
    out = check_embedding([[1, 2], [3, 4]])
    assert out.shape == (4,)
    assert out.dtype == np.float32


def test_dispose_is_idempotent(vision, vision_backend):
    """Test that the context is freed exactly once."""
    vision.load()
    vision.dispose()
    vision.dispose()
    assert vision.is_disposed
    assert vision_backend.freed == vision_backend.created


def test_dispose_without_load(vision, vision_backend):
    """Test disposing a never loaded model."""
    vision.dispose()
    assert vision.state is ModelState.DISPOSED
    assert vision_backend.freed == []


def test_operations_after_dispose(vision):
    """Test that every operation after dispose fails."""
    vision.load()
    vision.dispose()
    with pytest.raises(DisposedError):
        vision.process_image(GRAY_2X2, 2, 2, 1)
    with pytest.raises(AlreadyDisposedError):
        vision.load()


def test_dispose_failure_is_logged_not_raised(metrics):
    """Test that free errors do not escape dispose."""
    backend = FakeVisionBackend(fail_free=True)
    model = VisionModel("v", "p", backend, metrics=metrics)
    model.load()
    model.dispose()
    assert model.is_disposed
    assert len(backend.freed) == 1


def test_load_failure_is_backend_init_error(metrics):
    """Test that native load errors are wrapped."""
    model = VisionModel("v", "p", FakeVisionBackend(fail_create=True), metrics=metrics)
    with pytest.raises(BackendInitError):
        model.load()
    assert model.state is ModelState.UNINITIALIZED


def test_partial_load_frees_context(metrics):
    """A failure after context creation releases that context."""
    backend = FakeVisionBackend(fail_describe=True)
    model = VisionModel("v", "p", backend, metrics=metrics)
    with pytest.raises(BackendInitError):
        model.load()
    assert len(backend.created) == 1
    assert backend.freed == backend.created


def test_capabilities_refresh_on_load(vision):
    """Defaults before load, backend values after; stable across reads."""
    before = vision.get_capabilities()
    assert before.max_resolution == (1344, 1344)
    assert vision.get_capabilities() == before

    vision.load()
    after = vision.get_capabilities()
    assert after.max_resolution == (336, 336)
    assert after.embedding_dimensions == 8
    assert vision.get_capabilities() == after


def test_capabilities_available_after_dispose(vision):
    """Test that dispose leaves the last snapshot readable."""
    vision.load()
    vision.dispose()
    assert vision.get_capabilities().max_resolution == (336, 336)


def test_unavailable_backend_raises_unsupported(metrics):
    """A backend nobody registered fails fast on load."""
    model = VisionModel("v", "p", create_vision_backend("missing"), metrics=metrics)
    assert model.backend_available is False
    with pytest.raises(UnsupportedFormatError):
        model.load()


def test_dispose_during_encode_defers_free(metrics):
    """The context stays alive until the running encode finishes."""
    backend = FakeVisionBackend()
    backend.release = threading.Event()
    model = VisionModel("v", "p", backend, metrics=metrics)
    model.load()

    results = []
    worker = threading.Thread(target=lambda: results.append(model.process_image(GRAY_2X2, 2, 2, 1)))
    worker.start()
    assert backend.entered.wait(timeout=5)

    model.dispose()
    assert model.is_disposed
    assert backend.freed == []

    backend.release.set()
    worker.join(timeout=5)
    assert len(results) == 1
    assert backend.freed == backend.created


def test_concurrent_loads_create_one_context(metrics):
    """Test single-flight loading."""
    backend = FakeVisionBackend()
    model = VisionModel("v", "p", backend, metrics=metrics)
    threads = [threading.Thread(target=model.load) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    assert len(backend.created) == 1
    assert model.is_loaded


def test_process_audio(audio, audio_backend):
    """Test audio happy path with resampling."""
    audio.load()
    result = audio.process_audio(_sine(rate=8000), 8000)
    assert result.dimensions == 6
    assert result.transcript == "hello world"
    assert result.confidence == pytest.approx(0.9)
    assert result.metadata["sample_rate"] == 16000
    assert result.metadata["duration"] == pytest.approx(0.5)

    call = audio_backend.calls[0]
    assert call["language"] == "auto"
    assert abs(call["batch"].shape[1] - 8000) <= 1


def test_process_audio_without_transcript(audio, audio_backend):
    """Test that transcripts can be dropped."""
    audio.load()
    result = audio.process_audio(_sine(), 16000, generate_transcript=False)
    assert result.transcript is None
    assert audio_backend.calls[0]["generate_transcript"] is False


def test_process_audio_rejects_nan(audio):
    """Test that malformed samples never reach the backend."""
    audio.load()
    samples = _sine()
    samples[10] = np.nan
    with pytest.raises(ValidationError):
        audio.process_audio(samples, 16000)


def test_invalid_confidence_is_encode_error(metrics):
    """Test backend confidence validation."""
    model = AudioModel("a", FakeAudioBackend(confidence=1.5), metrics=metrics)
    model.load()
    with pytest.raises(EncodeError):
        model.process_audio(_sine(), 16000)


def test_set_sample_rate(audio):
    """Unsupported rates leave the previous value unchanged."""
    audio.set_sample_rate(22050)
    assert audio.sample_rate == 22050
    with pytest.raises(ValidationError):
        audio.set_sample_rate(99999)
    assert audio.sample_rate == 22050


def test_set_language(audio, audio_backend):
    """Test language validation and use."""
    audio.set_language("fr")
    assert audio.language == "fr"
    with pytest.raises(ValidationError):
        audio.set_language("xx")
    assert audio.language == "fr"
    audio.set_language("auto")

    audio.load()
    audio.process_audio(_sine(), 16000, language="de")
    assert audio_backend.calls[-1]["language"] == "de"


def test_setters_after_dispose(audio):
    """Test that configuration after dispose fails."""
    audio.dispose()
    with pytest.raises(DisposedError):
        audio.set_sample_rate(16000)
    with pytest.raises(DisposedError):
        audio.set_language("en")


@pytest.mark.parametrize("load_first", [True, False])
def test_process_audio_after_dispose(audio, audio_backend, load_first):
    """Encoding after dispose fails whether or not the model was loaded."""
    if load_first:
        audio.load()
    audio.dispose()
    with pytest.raises(DisposedError):
        audio.process_audio(_sine(), 16000)
    assert audio_backend.calls == []


def test_audio_unavailable_backend(metrics):
    """Test unavailable audio backend."""
    model = AudioModel("a", create_audio_backend("missing"), metrics=metrics)
    with pytest.raises(UnsupportedFormatError):
        model.load()


def test_encode_metrics_recorded(vision, metrics):
    """Test encode metrics."""
    vision.load()
    vision.process_image(GRAY_2X2, 2, 2, 1)
    with pytest.raises(ValidationError):
        vision.process_image(b"\x00", 2, 2, 1)
    rendered = metrics.get_metrics()
    assert 'mm_encode_requests_total{modality="vision",status="success"} 1.0' in rendered
    assert 'mm_encode_requests_total{modality="vision",status="failure"} 1.0' in rendered


def test_load_adopts_backend_required_rate(metrics):
    """Clips are resampled to the rate the loaded backend requires."""
    backend = FakeAudioBackend(report={"sample_rate": 22050})
    model = AudioModel("a", backend, metrics=metrics)
    assert model.sample_rate == 16000
    model.load()
    assert model.sample_rate == 22050
    result = model.process_audio(_sine(rate=44100, seconds=1.0), 44100)
    assert result.metadata["sample_rate"] == 22050
    assert abs(backend.calls[0]["batch"].shape[1] - 22050) <= 1


def test_explicit_sample_rate_survives_load(audio):
    """Test that a rate set before load is kept."""
    audio.set_sample_rate(48000)
    audio.load()
    assert audio.sample_rate == 48000


def test_malformed_capability_report_fails_load(metrics):
    """A describe report that cannot be parsed releases the context."""
    backend = FakeAudioBackend(report={"sample_rates": ["sixteen-k"]})
    model = AudioModel("a", backend, metrics=metrics)
    with pytest.raises(BackendInitError):
        model.load()
    assert model.state is ModelState.UNINITIALIZED
    assert len(backend.created) == 1
    assert backend.freed == backend.created
    assert model.get_capabilities().supported_sample_rates == frozenset({16000, 22050, 44100, 48000})
    with pytest.raises(NotLoadedError):
        model.process_audio(_sine(), 16000)
