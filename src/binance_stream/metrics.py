"""Prometheus metrics for the stream service."""

import asyncio
import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .config.settings import MetricsConfig

logger = logging.getLogger(__name__)


class MetricsService:
    """
    Prometheus metrics for one stream service.

    Lifecycle and market events are counted as they happen; connection state
    is sampled from the session stats by a background loop and on every
    scrape. Metrics live in their own registry so several services can
    coexist in one process.
    """

    def __init__(self, config: MetricsConfig, service):
        self.config = config
        self.service = service
        self.registry = CollectorRegistry()
        self.collection_task: Optional[asyncio.Task] = None

        self.prom_session_events = Counter(
            'binance_stream_session_events_total',
            'Session lifecycle events',
            ['event'],
            registry=self.registry,
        )
        self.prom_market_events = Counter(
            'binance_stream_market_events_total',
            'Decoded market events',
            ['event_type'],
            registry=self.registry,
        )
        self.prom_connected = Gauge(
            'binance_stream_connected',
            'Connection status (1=open, 0=not open)',
            registry=self.registry,
        )
        self.prom_reconnect_attempts = Gauge(
            'binance_stream_reconnect_attempts',
            'Consecutive reconnect attempts since the last successful open',
            registry=self.registry,
        )
        self.prom_subscriptions = Gauge(
            'binance_stream_subscriptions',
            'Streams currently tracked',
            registry=self.registry,
        )
        self.prom_last_message_timestamp = Gauge(
            'binance_stream_last_message_timestamp',
            'Unix time of the last inbound frame',
            registry=self.registry,
        )
        self.prom_decode_errors = Gauge(
            'binance_stream_decode_errors',
            'Frames that could not be decoded',
            registry=self.registry,
        )

        logger.info("Prometheus metrics initialized")

    async def start(self):
        self.collection_task = asyncio.ensure_future(self._collection_loop())
        logger.info("MetricsService started")

    async def stop(self):
        task, self.collection_task = self.collection_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("MetricsService stopped")

    async def _collection_loop(self):
        """Background loop for updating the sampled gauges."""
        while True:
            await asyncio.sleep(self.config.collection_interval_seconds)
            try:
                self.update()
                logger.debug("Prometheus metrics updated")
            except Exception as e:
                logger.error(f"Error updating Prometheus metrics: {e}")

    def update(self) -> None:
        """Sample gauges from the service components."""
        session = self.service.session
        if session is not None:
            stats = session.get_stats()
            self.prom_connected.set(1 if stats['is_connected'] else 0)
            self.prom_reconnect_attempts.set(stats['reconnect_attempts'])
            if stats['last_message_time']:
                self.prom_last_message_timestamp.set(stats['last_message_time'])

        if self.service.subscriptions is not None:
            self.prom_subscriptions.set(len(self.service.subscriptions.subscriptions))

        if self.service.market_data is not None:
            self.prom_decode_errors.set(self.service.market_data.stats['decode_errors'])

    def record_session_event(self, event: str) -> None:
        self.prom_session_events.labels(event=event).inc()

    def record_market_event(self, event) -> None:
        self.prom_market_events.labels(event_type=event.event_type.value).inc()

    def render(self) -> bytes:
        """Current metrics in the Prometheus text format."""
        self.update()
        return generate_latest(self.registry)
