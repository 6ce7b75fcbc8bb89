"""Tests for media input descriptors and embedding results."""

import base64

import numpy as np

from mmlibs.media.types import AudioInput, EmbeddingResult, ImageInput


def test_cache_key_covers_whole_base64_payload():
    """Test that payloads sharing a long prefix get distinct keys."""
    header = b"\xff\xd8\xff\xe0" + bytes(200)
    first = base64.b64encode(header + b"\x01" * 64).decode("ascii")
    second = base64.b64encode(header + b"\x02" * 64).decode("ascii")
    assert first[:200] == second[:200]

    key_a = ImageInput(data=first, mime_type="image/jpeg").cache_key()
    key_b = ImageInput(data=second, mime_type="image/jpeg").cache_key()
    assert key_a != key_b
    assert key_a == ImageInput(data=first, mime_type="image/jpeg").cache_key()


def test_cache_key_by_source_kind():
    """Test path, data and buffer keys."""
    assert ImageInput(path="/tmp/a.png").cache_key() == "/tmp/a.png"
    data_key = AudioInput(data="UklGRg==", mime_type="audio/wav").cache_key()
    buffer_key = AudioInput(buffer=b"RIFF", mime_type="audio/wav").cache_key()
    assert data_key.startswith("data:audio/wav:")
    assert buffer_key.startswith("buffer:audio/wav:")
    assert buffer_key != AudioInput(buffer=b"RIFF", mime_type="audio/x-wav").cache_key()


def test_embedding_result_copy_is_independent():
    """Test that a copy shares neither the vector nor the metadata."""
    original = EmbeddingResult(embedding=np.ones(4, dtype=np.float32), transcript="hi", metadata={"id": "a"})
    clone = original.copy()

    clone.embedding[:] = 0.0
    clone.metadata["id"] = "b"

    assert np.array_equal(original.embedding, np.ones(4, dtype=np.float32))
    assert original.metadata == {"id": "a"}
    assert clone.transcript == "hi"
    assert clone.processed_at == original.processed_at
