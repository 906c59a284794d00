"""Shared exception types for core trading logic."""

from typing import Any, Optional


class ExchangeError(RuntimeError):
    """Raised when the exchange rejects a request or returns an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ExchangeNotConfigured(ExchangeError):
    """Raised when an authenticated call is attempted without credentials."""


class ConfigurationError(ValueError):
    """Raised when configuration is missing or invalid."""
