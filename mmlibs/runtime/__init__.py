"""Process-wide native runtime management."""
