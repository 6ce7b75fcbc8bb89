"""Pure preprocessing for encoder inputs.

- ``vision``: channel validation/conversion and CHW float batching.
- ``audio``: resampling, normalization, pre-emphasis and mel features.
- ``retry``: one-shot retry used for channel-layout recovery.
"""
