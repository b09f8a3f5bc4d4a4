"""Subscription tracking and replay on top of a StreamSession."""

import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Callable, Iterable, List, Optional, Set, Union

from .clients.ws_session import SessionListener, StreamSession
from .exceptions import NotConnectedError

logger = logging.getLogger(__name__)

SUBSCRIBE = "SUBSCRIBE"
UNSUBSCRIBE = "UNSUBSCRIBE"

MessageHandler = Callable[[Union[str, bytes]], None]


@dataclass
class ControlMessage:
    """Outbound SUBSCRIBE/UNSUBSCRIBE frame."""
    method: str
    params: List[str]
    id: int

    def to_json(self) -> str:
        return json.dumps(asdict(self))


class SubscriptionManager(SessionListener):
    """
    Owns the set of streams the caller wants, independent of the socket.

    New subscriptions are sent right away when the session is open and
    deferred otherwise. Every time the session (re)opens, the whole set is
    sent again in a single SUBSCRIBE, so the server-side view converges on
    the local one after any number of reconnects.
    """

    def __init__(self, session: StreamSession, owner: Optional[SessionListener] = None):
        self.session = session
        self.owner = owner
        self._subscriptions: Set[str] = set()
        self._message_handlers: List[MessageHandler] = []
        self._last_request_id = 0
        session.add_listener(self)

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    def register_handler(self, handler: MessageHandler) -> None:
        """Register a callback for every raw inbound frame."""
        self._message_handlers.append(handler)

    def subscribe(self, stream_ids: Iterable[str]) -> List[str]:
        """Track streams and subscribe the ones that were not tracked yet."""
        added = []
        for stream_id in self._normalize(stream_ids):
            if stream_id in self._subscriptions:
                logger.info(f"Already subscribed to {stream_id}")
                continue
            self._subscriptions.add(stream_id)
            added.append(stream_id)

        if added:
            if self.session.is_open:
                self._send_control(SUBSCRIBE, added)
            else:
                logger.info(f"Session not open; deferring subscribe for {', '.join(added)} until reconnect")
        return added

    def unsubscribe(self, stream_ids: Iterable[str]) -> List[str]:
        """Stop tracking streams; untracked ids are ignored."""
        removed = []
        for stream_id in self._normalize(stream_ids):
            if stream_id not in self._subscriptions:
                logger.info(f"Not currently subscribed to {stream_id}")
                continue
            self._subscriptions.discard(stream_id)
            removed.append(stream_id)

        if removed and self.session.is_open:
            self._send_control(UNSUBSCRIBE, removed)
        return removed

    def resubscribe_all(self) -> None:
        """Send one SUBSCRIBE covering the full tracked set."""
        if not self._subscriptions:
            return
        streams = sorted(self._subscriptions)
        logger.info(f"Replaying {len(streams)} subscription(s) after connect")
        self._send_control(SUBSCRIBE, streams)

    def next_request_id(self) -> int:
        """Millisecond timestamp, bumped when two requests share a millisecond."""
        request_id = max(int(time.time() * 1000), self._last_request_id + 1)
        self._last_request_id = request_id
        return request_id

    def _send_control(self, method: str, streams: List[str]) -> None:
        message = ControlMessage(method=method, params=streams, id=self.next_request_id())
        try:
            self.session.send(message.to_json())
        except NotConnectedError:
            # The set already reflects the change; replay will reconcile it
            logger.warning(f"{method} for {', '.join(streams)} not sent: session dropped")
            return
        logger.info(f"{method} sent for streams: {', '.join(streams)} (id={message.id})")

    @staticmethod
    def _normalize(stream_ids: Iterable[str]) -> List[str]:
        if isinstance(stream_ids, str):
            stream_ids = [stream_ids]
        seen = []
        for stream_id in stream_ids:
            stream_id = stream_id.strip().lower()
            if stream_id and stream_id not in seen:
                seen.append(stream_id)
        return seen

    def _forward(self, event: str, *args) -> None:
        if self.owner is None:
            return
        try:
            getattr(self.owner, event)(*args)
        except Exception as e:
            logger.error(f"Owner error in {event}: {e}", exc_info=True)

    # SessionListener

    def on_open(self) -> None:
        # Owner hears about the new socket before anything is replayed on it
        self._forward('on_open')
        self.resubscribe_all()

    def on_message(self, payload) -> None:
        for handler in self._message_handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Message handler error: {e}", exc_info=True)
        self._forward('on_message', payload)

    def on_close(self, code: int, reason: str) -> None:
        self._forward('on_close', code, reason)

    def on_reconnect_scheduled(self, attempt: int, delay: float) -> None:
        self._forward('on_reconnect_scheduled', attempt, delay)

    def on_reconnect_exhausted(self) -> None:
        logger.error(f"Giving up on {self.session.url}; {len(self._subscriptions)} subscription(s) left unserved")
        self._forward('on_reconnect_exhausted')
