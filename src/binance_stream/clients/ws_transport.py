"""websockets transport that reports protocol ping/pong frames to its owner."""

import logging
from typing import Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.frames import Frame, Opcode

from ..config.settings import StreamConfig

logger = logging.getLogger(__name__)

# Called with ("ping" | "pong", payload) for every inbound control frame
FrameObserver = Callable[[str, bytes], None]


class ObservedClientConnection(ClientConnection):
    """
    ClientConnection that lets the session see inbound pings and pongs.

    websockets answers pings on its own; this only adds a notification so the
    liveness timer can be re-armed on control traffic as well as data.
    """

    frame_observer: Optional[FrameObserver] = None

    def process_event(self, event) -> None:
        super().process_event(event)
        if not isinstance(event, Frame) or self.frame_observer is None:
            return
        if event.opcode is Opcode.PING:
            self.frame_observer("ping", bytes(event.data))
        elif event.opcode is Opcode.PONG:
            self.frame_observer("pong", bytes(event.data))

    def abort(self) -> None:
        """Drop the TCP connection without a close handshake."""
        if self.transport is not None:
            self.transport.abort()


class WebSocketConnector:
    """Opens one physical websocket per call."""

    def __init__(self, config: StreamConfig, user_agent: str = "binance-stream/1.0"):
        self.config = config
        self.user_agent = user_agent

    async def __call__(self, url: str, frame_observer: FrameObserver) -> ObservedClientConnection:
        def create_connection(*args, **kwargs):
            connection = ObservedClientConnection(*args, **kwargs)
            connection.frame_observer = frame_observer
            return connection

        # Keepalive and open timeout are owned by the session, not the library
        return await connect(
            url,
            create_connection=create_connection,
            ping_interval=None,
            ping_timeout=None,
            open_timeout=None,
            close_timeout=self.config.close_timeout_seconds,
            max_size=self.config.max_message_size,
            compression=None,
            user_agent_header=self.user_agent,
        )
