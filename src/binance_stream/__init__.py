"""Resilient Binance market stream client."""

from .clients.ws_session import SessionListener, SessionState, StreamSession
from .subscription import ControlMessage, SubscriptionManager
from .exceptions import NotConnectedError, StreamError

__version__ = "0.1.0"

__all__ = [
    "SessionListener",
    "SessionState",
    "StreamSession",
    "ControlMessage",
    "SubscriptionManager",
    "NotConnectedError",
    "StreamError",
]
