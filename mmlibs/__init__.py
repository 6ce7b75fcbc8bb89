"""Multimodal (vision + audio) encoders for language-model hosts.

Subpackages:
- ``mmlibs.common``: configuration, logging and metrics.
- ``mmlibs.encoders``: backend interfaces, capabilities, factory and the
  vision/audio lifecycle controllers.
- ``mmlibs.preprocessing``: pure image and audio preprocessing.
- ``mmlibs.media``: input descriptors, raw buffers and decoders.
- ``mmlibs.runtime``: process-wide native backend initialization.

Usage:
- ``from mmlibs.multimodal import MultimodalModel`` for the high-level facade.
- Use the controllers in ``mmlibs.encoders`` directly for raw buffers.
"""
