"""Exception types raised by the stream client."""

from typing import Optional


class StreamError(Exception):
    """Base class for binance-stream errors."""


class NotConnectedError(StreamError):
    """Raised when sending on a session that is not open."""


class DecodeError(StreamError):
    """Raised when an inbound frame cannot be decoded."""


class ConfigurationError(StreamError):
    """Raised when required configuration is missing or invalid."""


class BinanceAPIError(StreamError):
    """Structured error returned by the Binance REST API."""

    def __init__(self, status: int, message: str, code: Optional[int] = None):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"HTTP {status} (code={code}): {message}")


class BinanceServerError(BinanceAPIError):
    """Rate limit (429) or server-side (5xx) failure; safe to retry."""
