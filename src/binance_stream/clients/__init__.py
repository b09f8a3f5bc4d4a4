from .ws_session import SessionListener, SessionState, StreamSession
from .ws_transport import WebSocketConnector
from .binance_rest import BinanceRESTClient

__all__ = [
    "SessionListener",
    "SessionState",
    "StreamSession",
    "WebSocketConnector",
    "BinanceRESTClient",
]
