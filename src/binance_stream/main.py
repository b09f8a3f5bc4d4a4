"""Binance stream service - keeps a market data subscription session alive."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from .clients.ws_session import SessionListener, StreamSession
from .config.settings import StreamSettings, load_settings
from .health import HealthCheckServer
from .market_data import MarketDataService, MarketEventType
from .metrics import MetricsService
from .subscription import SubscriptionManager
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


class StreamService(SessionListener):
    """Main service wiring session, subscriptions, market data and HTTP endpoints."""

    def __init__(self, config_file: Optional[str] = None, settings: Optional[StreamSettings] = None):
        self.config = settings or load_settings(config_file)
        self.session: Optional[StreamSession] = None
        self.subscriptions: Optional[SubscriptionManager] = None
        self.market_data: Optional[MarketDataService] = None
        self.health_server: Optional[HealthCheckServer] = None
        self.metrics: Optional[MetricsService] = None
        self.exhausted = False
        self._shutdown_event = asyncio.Event()

        setup_logging(self.config.logging, self.config.service_name)
        logger.info(f"Stream service initialized (environment={self.config.environment})")

    def build(self, connector=None, scheduler=None) -> None:
        """Create the session stack without touching the network."""
        self.session = StreamSession(
            url=self.config.binance.ws_base_url,
            config=self.config.stream,
            connector=connector,
            scheduler=scheduler,
        )
        self.subscriptions = SubscriptionManager(self.session, owner=self)
        self.market_data = MarketDataService(self.subscriptions)

        if self.config.metrics.enable_prometheus:
            self.metrics = MetricsService(self.config.metrics, self)
            for event_type in MarketEventType:
                self.market_data.register_handler(event_type, self.metrics.record_market_event)

        if self.config.stream.streams:
            self.subscriptions.subscribe(self.config.stream.streams)

    async def start(self):
        """Run until a shutdown signal arrives or the session gives up."""
        logger.info("Starting stream service")

        if self.session is None:
            self.build()

        self._setup_signal_handlers()

        if self.metrics:
            await self.metrics.start()

        if self.config.health.enabled:
            self.health_server = HealthCheckServer(self, self.config.health.host, self.config.health.port)
            await self.health_server.start()

        self.session.connect()

        closed_task = asyncio.ensure_future(self.session.wait_closed())
        shutdown_task = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            await asyncio.wait({closed_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (closed_task, shutdown_task):
                task.cancel()
            await self.stop()

    async def stop(self):
        logger.info("Shutting down stream service")
        if self.session:
            self.session.close()
        if self.health_server:
            await self.health_server.stop()
            self.health_server = None
        if self.metrics:
            await self.metrics.stop()
        logger.info("Stream service stopped")

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down gracefully...")
        # Closing here as well cancels any reconnect timer right away
        if self.session:
            self.session.close()
        self._shutdown_event.set()

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig)

    async def health_check(self) -> dict:
        """Perform health check."""
        health_status = {
            "service": self.config.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        if self.session:
            health_status["components"]["session"] = await self.session.health_check()
        if self.subscriptions:
            health_status["components"]["subscriptions"] = {
                "status": "healthy",
                "streams": sorted(self.subscriptions.subscriptions),
            }
        if self.market_data:
            health_status["components"]["market_data"] = {
                "status": "healthy",
                "stats": dict(self.market_data.stats),
            }

        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if any(status == "unhealthy" for status in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in component_statuses):
            health_status["status"] = "degraded"

        return health_status

    # SessionListener

    def on_open(self) -> None:
        self._record('open')
        logger.info(f"Stream session open: {self.config.binance.ws_base_url}")

    def on_close(self, code: int, reason: str) -> None:
        self._record('close')
        logger.info(f"Stream session closed (code={code}, reason={reason})")

    def on_reconnect_scheduled(self, attempt: int, delay: float) -> None:
        self._record('reconnect_scheduled')
        logger.info(f"Reconnect {attempt}/{self.config.stream.max_reconnect_attempts} scheduled in {delay}s")

    def on_reconnect_exhausted(self) -> None:
        self._record('reconnect_exhausted')
        logger.critical("Reconnect attempts exhausted; stream service cannot recover on its own")
        self.exhausted = True

    def _record(self, event: str) -> None:
        if self.metrics:
            self.metrics.record_session_event(event)


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")
    service = StreamService(config_file)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)

    if service.exhausted:
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
