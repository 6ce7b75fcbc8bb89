"""Common utilities shared across encoder components.

Includes:
- ``config``: pydantic-settings configuration from ``MM_*`` environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers and decorators.

Import pattern:
- from mmlibs.common.config import AudioConfig
- from mmlibs.common.logging import configure_logging
"""
