from __future__ import annotations


class ValidationError(Exception):
    """Raised when a payload or configuration is invalid."""


class ConfigurationError(ValidationError):
    """Raised when the station cannot start in its configured mode."""
