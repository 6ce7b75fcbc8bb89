"""Tests for the multimodal encoders.

Native backends are replaced by in-memory fakes from ``conftest.py`` so the
lifecycle, preprocessing and facade logic run without model files.
"""
