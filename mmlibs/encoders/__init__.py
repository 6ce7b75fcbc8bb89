"""Encoder interfaces and lifecycle controllers.

Primary components:
- ``base``: abstract backend/decoder interfaces and the error hierarchy.
- ``capabilities``: static defaults and backend-refreshed capability snapshots.
- ``factory``: backend registry; unknown names yield unavailable backends.
- ``lifecycle``: load/dispose state machine shared by both encoders.
- ``vision`` / ``audio``: modality specific controllers.

Guidance:
- Construct backends via ``factory.create_vision_backend`` and friends so
  controllers never import native bindings directly.
"""
