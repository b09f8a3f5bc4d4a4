"""Pytest configuration and shared fixtures."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from binance_stream.clients.ws_session import SessionListener, StreamSession
from binance_stream.config.settings import StreamConfig, StreamSettings


class FakeTimer:
    def __init__(self, when: float, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Deterministic replacement for loop.call_later; time moves only via advance()."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def pending_for(self, name: str) -> List[FakeTimer]:
        return [t for t in self.pending() if t.callback.__name__ == name]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.now = timer.when
            timer.fired = True
            timer.callback(*timer.args)
        self.now = target


class FakeConnection:
    """In-memory stand-in for ObservedClientConnection."""

    def __init__(self, frame_observer):
        self.frame_observer = frame_observer
        self.sent: List[Any] = []
        self.pings = 0
        self.closed = False
        self.aborted = False
        self.close_calls = 0
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def recv(self):
        item = await self._inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""))
        self.sent.append(data)

    async def ping(self):
        self.pings += 1

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_calls += 1
        self.closed = True
        self._inbox.put_nowait(ConnectionClosedOK(Close(code, reason), Close(code, reason)))

    def abort(self):
        self.aborted = True
        self.closed = True
        self._inbox.put_nowait(ConnectionClosedError(None, None))

    # Server-side helpers

    def feed(self, payload):
        self._inbox.put_nowait(payload)

    def server_ping(self, data: bytes = b""):
        self.frame_observer("ping", data)

    def server_pong(self, data: bytes = b""):
        self.frame_observer("pong", data)

    def drop(self, code: int = 1006, reason: str = "connection reset"):
        self.closed = True
        self._inbox.put_nowait(ConnectionClosedError(Close(code, reason), None))

    def sent_json(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.sent]


class FakeConnector:
    """Hands out FakeConnections; ``failures`` makes the next N opens raise."""

    def __init__(self):
        self.calls = 0
        self.failures = 0
        self.always_fail = False
        self.connections: List[FakeConnection] = []

    async def __call__(self, url, frame_observer):
        self.calls += 1
        if self.always_fail or self.failures > 0:
            self.failures = max(0, self.failures - 1)
            raise OSError("Connection refused")
        connection = FakeConnection(frame_observer)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> Optional[FakeConnection]:
        return self.connections[-1] if self.connections else None


class RecordingListener(SessionListener):
    def __init__(self):
        self.events: List[tuple] = []

    def on_open(self):
        self.events.append(("open",))

    def on_message(self, payload):
        self.events.append(("message", payload))

    def on_close(self, code, reason):
        self.events.append(("close", code, reason))

    def on_reconnect_scheduled(self, attempt, delay):
        self.events.append(("reconnect_scheduled", attempt, delay))

    def on_reconnect_exhausted(self):
        self.events.append(("exhausted",))

    def of(self, kind: str) -> List[tuple]:
        return [e for e in self.events if e[0] == kind]


async def _settle(rounds: int = 20) -> None:
    """Let pending tasks run to their next await point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(
        max_reconnect_attempts=10,
        base_backoff_seconds=5.0,
        max_backoff_seconds=60.0,
        heartbeat_window_seconds=30.0,
        liveness_grace_seconds=5.0,
    )


@pytest_asyncio.fixture
async def session(stream_config, connector, scheduler, listener):
    session = StreamSession(
        url="wss://stream.test/ws",
        config=stream_config,
        connector=connector,
        scheduler=scheduler,
        name="test",
    )
    session.add_listener(listener)
    yield session
    session.close()
    await _settle()


@pytest.fixture
def test_settings() -> StreamSettings:
    return StreamSettings(
        service_name="test-stream",
        environment="test",
        binance={"ws_base_url": "wss://stream.test/ws", "api_key": "test-key", "api_secret": "test-secret"},
        stream={"streams": ["btcusdt@trade"], "base_backoff_seconds": 1.0, "max_backoff_seconds": 10.0},
        retry={"max_attempts": 2, "initial_backoff_seconds": 0.01, "jitter": False},
        health={"enabled": False},
        logging={"level": "DEBUG", "format": "text"},
    )


@pytest.fixture
def sample_trade_message() -> str:
    return json.dumps({
        'e': 'trade',
        'E': 1640995200000,
        's': 'BTCUSDT',
        't': 12345,
        'p': '45000.50',
        'q': '0.1',
        'T': 1640995199999,
        'm': False,
        'M': True
    })


@pytest.fixture
def sample_depth_update_message() -> str:
    return json.dumps({
        'e': 'depthUpdate',
        'E': 1640995200000,
        's': 'BTCUSDT',
        'U': 157,
        'u': 160,
        'b': [['44999.99', '0.5'], ['44999.98', '1.0']],
        'a': [['45000.01', '0.3']]
    })


@pytest.fixture
def sample_kline_message() -> str:
    return json.dumps({
        'stream': 'btcusdt@kline_1m',
        'data': {
            'e': 'kline',
            'E': 1640995200000,
            's': 'BTCUSDT',
            'k': {
                't': 1640995140000, 'T': 1640995199999, 's': 'BTCUSDT', 'i': '1m',
                'f': 100, 'L': 200, 'o': '45000.00', 'c': '45010.00', 'h': '45020.00',
                'l': '44990.00', 'v': '12.5', 'n': 101, 'x': True, 'q': '562500.0',
                'V': '6.0', 'Q': '270000.0', 'B': '0'
            }
        }
    })
