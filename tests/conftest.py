"""Shared fixtures: in-memory fake backends standing in for native bindings."""

import threading
import time
from itertools import count

import numpy as np
import pytest

from mmlibs.common.metrics import MetricsCollector
from mmlibs.encoders.base import AudioEncoderBackend, GlobalBackend, VisionEncoderBackend
from mmlibs.encoders.factory import BackendFactory
from mmlibs.media.types import AudioEncoding, NormalizedTensorBatch
from mmlibs.runtime import backend_manager

_context_ids = count(1)


class FakeContext:
    def __init__(self, model_path, mmproj_path=None):
        self.id = next(_context_ids)
        self.model_path = model_path
        self.mmproj_path = mmproj_path


class _ContextTracking:
    """Records every context created and freed."""

    def __init__(self, report=None, fail_create=False, fail_describe=False, fail_free=False):
        self.report = report or {}
        self.fail_create = fail_create
        self.fail_describe = fail_describe
        self.fail_free = fail_free
        self.created = []
        self.freed = []

    def create_context(self, model_path, mmproj_path=None):
        if self.fail_create:
            raise RuntimeError("native load failed")
        context = FakeContext(model_path, mmproj_path)
        self.created.append(context)
        return context

    def free_context(self, context):
        self.freed.append(context)
        if self.fail_free:
            raise RuntimeError("native free failed")

    def describe(self, context):
        if self.fail_describe:
            raise RuntimeError("describe failed")
        return dict(self.report)


class FakeVisionBackend(_ContextTracking, VisionEncoderBackend):
    name = "fake-vision"

    def __init__(self, dim=8, output=None, empty_preprocess=False, **kwargs):
        super().__init__(report=kwargs.pop("report", {"image_size": 336, "embedding_dim": dim}), **kwargs)
        self.dim = dim
        self.output = output
        self.empty_preprocess = empty_preprocess
        self.batches = []
        self.entered = threading.Event()
        self.release = None

    def preprocess(self, context, batch):
        if self.empty_preprocess:
            return NormalizedTensorBatch(data=np.zeros((0, 3, 1, 1), dtype=np.float32))
        return batch

    def encode(self, context, batch):
        self.batches.append(batch)
        self.entered.set()
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.output is not None:
            return self.output
        return np.full(self.dim, float(batch.data.mean()), dtype=np.float32)


class FakeAudioBackend(_ContextTracking, AudioEncoderBackend):
    name = "fake-audio"

    def __init__(self, dim=6, transcript="hello world", confidence=0.9, **kwargs):
        super().__init__(report=kwargs.pop("report", {"sample_rate": 16000, "embedding_dim": dim}), **kwargs)
        self.dim = dim
        self.transcript = transcript
        self.confidence = confidence
        self.calls = []

    def encode(self, context, batch, language="auto", generate_transcript=True):
        self.calls.append({
            "batch": batch,
            "language": language,
            "generate_transcript": generate_transcript,
        })
        return AudioEncoding(
            embedding=np.linspace(0.0, 1.0, self.dim, dtype=np.float32),
            transcript=self.transcript,
            confidence=self.confidence,
        )


class FakeGlobalBackend(GlobalBackend):
    name = "fake-global"

    def __init__(self, delay=0.0, fail_init=False, fail_free=False):
        self.delay = delay
        self.fail_init = fail_init
        self.fail_free = fail_free
        self.init_calls = 0
        self.free_calls = 0
        self._lock = threading.Lock()

    def init(self):
        with self._lock:
            self.init_calls += 1
        time.sleep(self.delay)
        if self.fail_init:
            raise RuntimeError("backend init failed")

    def free(self):
        with self._lock:
            self.free_calls += 1
        if self.fail_free:
            raise RuntimeError("backend free failed")


@pytest.fixture
def metrics():
    return MetricsCollector("test-service")


@pytest.fixture
def vision_backend():
    return FakeVisionBackend()


@pytest.fixture
def audio_backend():
    return FakeAudioBackend()


@pytest.fixture
def global_backend():
    return FakeGlobalBackend()


@pytest.fixture(autouse=True)
def clean_registries():
    registry = dict(BackendFactory._registry)
    yield
    BackendFactory._registry.clear()
    BackendFactory._registry.update(registry)
    backend_manager.reset_backend_manager()
