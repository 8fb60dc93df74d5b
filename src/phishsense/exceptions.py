"""Exception hierarchy for PhishSense."""

from __future__ import annotations


class PhishSenseError(Exception):
    """Base class for all PhishSense errors."""


class ConfigError(PhishSenseError):
    """Raised when the pattern configuration is invalid."""


class ModelNotReadyError(PhishSenseError):
    """Raised when ML inference is attempted before warm-up completed."""


class RemoteModelError(PhishSenseError):
    """Raised when the remote scoring endpoint fails or returns garbage."""
