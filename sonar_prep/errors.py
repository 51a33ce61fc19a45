"""Error types for sonar_prep."""

from __future__ import annotations


class CLIError(Exception):
    """Raised for user-facing CLI errors."""
