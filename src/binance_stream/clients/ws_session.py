"""Resilient websocket session for Binance market streams.

One ``StreamSession`` owns at most one physical socket at a time. It keeps the
socket alive with protocol pings, tears it down when the peer goes silent, and
reconnects with capped exponential backoff until the attempt budget runs out.
Owners observe it through ``SessionListener`` callbacks.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from websockets.exceptions import ConnectionClosed

from ..config.settings import StreamConfig
from ..exceptions import NotConnectedError
from ..utils.logging import log_with_context
from ..utils.retry import backoff_delay
from .ws_transport import WebSocketConnector

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


class SessionState(Enum):
    """Connection session states."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    TERMINAL = "terminal"


class SessionListener:
    """Lifecycle observer for a StreamSession. Every hook is optional."""

    def on_open(self) -> None:
        pass

    def on_message(self, payload: Union[str, bytes]) -> None:
        pass

    def on_close(self, code: int, reason: str) -> None:
        pass

    def on_reconnect_scheduled(self, attempt: int, delay: float) -> None:
        pass

    def on_reconnect_exhausted(self) -> None:
        pass


class LoopScheduler:
    """Timer source backed by the running event loop."""

    def call_later(self, delay: float, callback, *args) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)


class StreamSession:
    """
    Single logical websocket connection with heartbeat and reconnect.

    Every open attempt and every handled close bumps ``_generation``. Timer
    callbacks and connection tasks carry the generation they were created for
    and do nothing once it is stale, so a late callback can never act on a
    socket that has been replaced.
    """

    def __init__(
        self,
        url: str,
        config: StreamConfig,
        connector=None,
        scheduler=None,
        name: Optional[str] = None,
    ):
        self.url = url
        self.config = config
        self.name = name or url
        self._connector = connector or WebSocketConnector(config)
        self._scheduler = scheduler or LoopScheduler()
        self._listeners: List[SessionListener] = []

        self._state = SessionState.IDLE
        self._connection = None
        self._generation = 0
        self._manually_closed = False
        self._reconnect_attempts = 0

        self._heartbeat_timer = None
        self._liveness_timer = None
        self._reconnect_timer = None

        self._run_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._background: Set[asyncio.Task] = set()
        self._terminal = asyncio.Event()

        self.stats = {
            'connection_count': 0,
            'disconnect_count': 0,
            'reconnect_count': 0,
            'messages_received': 0,
            'messages_sent': 0,
            'pings_sent': 0,
            'pings_received': 0,
            'pongs_received': 0,
            'liveness_timeouts': 0,
            'last_message_time': None,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def connect(self) -> None:
        """Start opening a socket. Must be called from inside the event loop."""
        if self._state is SessionState.OPEN:
            logger.info(f"[{self.name}] WebSocket already connected.")
            return
        if self._state in (SessionState.CONNECTING, SessionState.CLOSING):
            logger.info(f"[{self.name}] Connection attempt already in progress ({self._state.value}).")
            return
        if self._state is SessionState.TERMINAL:
            logger.info(f"[{self.name}] Restarting terminated session.")
            self._manually_closed = False
            self._reconnect_attempts = 0
            self._terminal.clear()

        self._cancel_timer('_reconnect_timer')
        self._generation += 1
        self._state = SessionState.CONNECTING
        logger.info(f"[{self.name}] Attempting to connect to WebSocket: {self.url}")
        self._run_task = asyncio.ensure_future(self._run(self._generation))

    def close(self) -> None:
        """
        Close the session for good.

        Synchronous and idempotent so it can run from a signal handler. Any
        pending reconnect is cancelled and an open socket is closed gracefully.
        """
        if self._manually_closed:
            logger.debug(f"[{self.name}] close() already requested.")
            return

        self._manually_closed = True
        self._cancel_timer('_reconnect_timer')
        logger.info(f"[{self.name}] Closing WebSocket connection.")

        if self._state in (SessionState.CONNECTING, SessionState.OPEN):
            self._state = SessionState.CLOSING
            self._abandon_run_task()
            self._handle_close(self._generation, NORMAL_CLOSURE, "closed by client", graceful=True)
        else:
            self._enter_terminal()

    def send(self, payload: Union[str, bytes]) -> None:
        """
        Queue a frame on the current socket without waiting for the write.

        Raises:
            NotConnectedError: If the session is not open
        """
        if self._state is not SessionState.OPEN or self._outbox is None:
            raise NotConnectedError(f"WebSocket not connected (state={self._state.value})")
        self._outbox.put_nowait(('data', payload))

    async def wait_closed(self) -> None:
        """Wait until the session is terminal (manual close or exhaustion)."""
        await self._terminal.wait()

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        last_message_age = None
        if self.stats['last_message_time']:
            last_message_age = time.time() - self.stats['last_message_time']

        return {
            **self.stats,
            'state': self._state.value,
            'is_connected': self.is_open,
            'reconnect_attempts': self._reconnect_attempts,
            'last_message_age_seconds': last_message_age,
        }

    async def health_check(self) -> Dict[str, Any]:
        """Report whether the session is usable."""
        stats = self.get_stats()
        health_status = {
            'status': 'healthy',
            'issues': [],
            'stats': stats,
        }

        if self._state is SessionState.TERMINAL:
            health_status['status'] = 'unhealthy'
            health_status['issues'].append('WebSocket session terminated')
        elif not stats['is_connected']:
            health_status['status'] = 'degraded'
            health_status['issues'].append(f"WebSocket not connected ({self._state.value})")

        age = stats['last_message_age_seconds']
        if stats['is_connected'] and age is not None and age > self.config.liveness_timeout:
            health_status['status'] = 'degraded'
            health_status['issues'].append(f"No messages for {age:.1f}s")

        return health_status

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _run(self, generation: int) -> None:
        try:
            connection = await asyncio.wait_for(
                self._connector(self.url, self._make_frame_observer(generation)),
                timeout=self.config.liveness_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] Failed to connect to {self.url}: {e!r}")
            self._handle_close(generation, ABNORMAL_CLOSURE, f"connect failed: {e}")
            return

        if generation != self._generation:
            # close() or a newer connect() got here first
            await connection.close()
            return

        self._on_open(generation, connection)
        await self._read_loop(generation, connection)

    def _on_open(self, generation: int, connection) -> None:
        self._connection = connection
        self._reconnect_attempts = 0
        self._state = SessionState.OPEN
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.ensure_future(self._write_loop(connection, self._outbox))
        self._schedule_heartbeat(generation)
        self._arm_liveness(generation)
        self.stats['connection_count'] += 1

        logger.info(f"[{self.name}] WebSocket connection established.")
        self._notify('on_open')

    async def _read_loop(self, generation: int, connection) -> None:
        code, reason = ABNORMAL_CLOSURE, ""
        try:
            while True:
                payload = await connection.recv()
                self._arm_liveness(generation)
                self.stats['messages_received'] += 1
                self.stats['last_message_time'] = time.time()
                self._notify('on_message', payload)
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
        except Exception as e:
            logger.error(f"[{self.name}] WebSocket error: {e!r}")
            reason = str(e)

        self._handle_close(generation, code, reason)

    async def _write_loop(self, connection, outbox: asyncio.Queue) -> None:
        while True:
            kind, payload = await outbox.get()
            if kind == 'close':
                return
            try:
                if kind == 'ping':
                    await connection.ping()
                else:
                    await connection.send(payload)
                    self.stats['messages_sent'] += 1
            except (ConnectionClosed, OSError) as e:
                # The read loop sees the same failure and drives the close path
                logger.debug(f"[{self.name}] Write failed on closing socket: {e!r}")
                return

    def _handle_close(self, generation: int, code: int, reason: str, graceful: bool = False) -> None:
        """Single close path for errors, remote closes, timeouts and close()."""
        if generation != self._generation:
            return
        self._generation += 1

        # Order matters: timers, then the handle, then any reconnect
        self._cancel_timers()
        connection, self._connection = self._connection, None
        writer, self._writer_task = self._writer_task, None
        outbox, self._outbox = self._outbox, None

        if graceful and outbox is not None:
            # Frames already accepted by send() go out before the close frame
            outbox.put_nowait(('close', None))
        elif writer is not None:
            writer.cancel()

        if connection is not None:
            if graceful:
                self._spawn(self._close_gracefully(connection, writer))
            else:
                connection.abort()
            self.stats['disconnect_count'] += 1

        logger.warning(f"[{self.name}] WebSocket connection closed. Code: {code}, Reason: {reason}")

        if self._manually_closed:
            self._enter_terminal()
            self._notify('on_close', code, reason)
            return

        if self._reconnect_attempts < self.config.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = backoff_delay(
                self._reconnect_attempts,
                self.config.base_backoff_seconds,
                self.config.max_backoff_seconds,
            )
            self._state = SessionState.RECONNECTING
            self._reconnect_timer = self._scheduler.call_later(delay, self._on_reconnect_timer)
            log_with_context(
                logger, logging.INFO,
                f"[{self.name}] Attempting to reconnect in {delay} seconds... "
                f"(Attempt {self._reconnect_attempts}/{self.config.max_reconnect_attempts})",
                attempt=self._reconnect_attempts,
                delay_seconds=delay,
            )
            self._notify('on_close', code, reason)
            self._notify('on_reconnect_scheduled', self._reconnect_attempts, delay)
        else:
            logger.error(f"[{self.name}] Max reconnect attempts reached. Will not reconnect.")
            self._enter_terminal()
            self._notify('on_close', code, reason)
            self._notify('on_reconnect_exhausted')

    async def _close_gracefully(self, connection, writer: Optional[asyncio.Task] = None) -> None:
        if writer is not None:
            try:
                await asyncio.wait_for(writer, timeout=self.config.close_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{self.name}] Pending frames not flushed within {self.config.close_timeout_seconds}s; closing anyway."
                )
        try:
            await connection.close()
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"[{self.name}] Error during close handshake: {e!r}")

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self._manually_closed or self._state is not SessionState.RECONNECTING:
            return
        self.stats['reconnect_count'] += 1
        self.connect()

    def _enter_terminal(self) -> None:
        self._state = SessionState.TERMINAL
        self._terminal.set()

    def _abandon_run_task(self) -> None:
        task, self._run_task = self._run_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Heartbeat and liveness
    # ------------------------------------------------------------------

    def _schedule_heartbeat(self, generation: int) -> None:
        self._cancel_timer('_heartbeat_timer')
        self._heartbeat_timer = self._scheduler.call_later(
            self.config.heartbeat_interval, self._on_heartbeat, generation
        )

    def _on_heartbeat(self, generation: int) -> None:
        if generation != self._generation or self._state is not SessionState.OPEN:
            return
        self._heartbeat_timer = None

        logger.debug(f"[{self.name}] Sending ping.")
        self._outbox.put_nowait(('ping', None))
        self.stats['pings_sent'] += 1
        # A ping guarantees a deadline exists; it never postpones one
        if self._liveness_timer is None:
            self._arm_liveness(generation)
        self._schedule_heartbeat(generation)

    def _arm_liveness(self, generation: int) -> None:
        if generation != self._generation or self._state is not SessionState.OPEN:
            return
        self._cancel_timer('_liveness_timer')
        self._liveness_timer = self._scheduler.call_later(
            self.config.liveness_timeout, self._on_liveness_timeout, generation
        )

    def _on_liveness_timeout(self, generation: int) -> None:
        if generation != self._generation or self._state is not SessionState.OPEN:
            return
        self._liveness_timer = None

        logger.warning(
            f"[{self.name}] WebSocket connection timeout. No message/pong received "
            f"for {self.config.liveness_timeout}s. Terminating connection."
        )
        self.stats['liveness_timeouts'] += 1
        self._abandon_run_task()
        self._handle_close(generation, ABNORMAL_CLOSURE, "liveness timeout")

    def _make_frame_observer(self, generation: int):
        def observe(kind: str, data: bytes) -> None:
            if generation != self._generation:
                return
            if kind == 'ping':
                # The transport has already queued the pong
                self.stats['pings_received'] += 1
                logger.debug(f"[{self.name}] Received ping, pong sent.")
            else:
                self.stats['pongs_received'] += 1
                logger.debug(f"[{self.name}] Received pong.")
            self._arm_liveness(generation)
        return observe

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cancel_timer(self, attr: str) -> None:
        timer = getattr(self, attr)
        if timer is not None:
            timer.cancel()
            setattr(self, attr, None)

    def _cancel_timers(self) -> None:
        for attr in ('_heartbeat_timer', '_liveness_timer', '_reconnect_timer'):
            self._cancel_timer(attr)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self, event: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception as e:
                logger.error(f"[{self.name}] Listener error in {event}: {e}", exc_info=True)
