"""Open many independent stream sessions at once and watch how many stay up."""

import argparse
import asyncio
import logging
import os
import random
import signal
from typing import List, Optional

from .clients.ws_session import StreamSession
from .config.settings import StreamSettings, load_settings
from .subscription import SubscriptionManager
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)

TRADING_PAIRS = [
    "btcusdt", "ethusdt", "bnbusdt", "solusdt", "xrpusdt",
    "adausdt", "dogeusdt", "avaxusdt", "dotusdt", "linkusdt",
    "ltcusdt", "trxusdt", "uniusdt", "atomusdt", "xlmusdt",
    "vetusdt", "icpusdt", "filusdt", "etcusdt", "bchusdt",
    "algousdt", "hbarusdt", "nearusdt", "sandusdt", "manausdt",
    "axsusdt", "aaveusdt", "grtusdt", "eosusdt", "xtzusdt",
    "zecusdt", "dashusdt", "compusdt", "snxusdt", "sushiusdt",
    "yfiusdt", "batusdt", "enjusdt", "crvusdt", "ankrusdt",
    "chzusdt", "zilusdt", "ontusdt", "kncusdt", "bandusdt",
    "iotxusdt", "storjusdt", "rlcusdt", "lrcusdt", "runeusdt",
]

STAGGER_BATCH = 20


def build_stream_names(count: int, pairs: Optional[List[str]] = None) -> List[str]:
    """One ``<pair>@kline_1m`` stream per connection, cycling through the pairs."""
    pairs = pairs or TRADING_PAIRS
    return [f"{pairs[i % len(pairs)].lower()}@kline_1m" for i in range(count)]


class StressTest:
    """N sessions, each with its own subscription manager; no shared state between them."""

    def __init__(
        self,
        settings: StreamSettings,
        connections: int = 100,
        duration_seconds: float = 60.0,
        census_interval_seconds: float = 30.0,
        connect_jitter_seconds: float = 0.5,
        connector=None,
    ):
        self.settings = settings
        self.connections = connections
        self.duration_seconds = duration_seconds
        self.census_interval_seconds = census_interval_seconds
        self.connect_jitter_seconds = connect_jitter_seconds
        self.connector = connector
        self.clients: List[SubscriptionManager] = []
        self._stop_event = asyncio.Event()

    def open_count(self) -> int:
        return sum(1 for client in self.clients if client.session.is_open)

    async def start_clients(self) -> None:
        streams = build_stream_names(self.connections)
        logger.info(f"Starting WebSocket stress test for {self.connections} connections...")

        for i, stream in enumerate(streams):
            session = StreamSession(
                url=self.settings.binance.ws_base_url,
                config=self.settings.stream,
                connector=self.connector,
                name=f"client-{i + 1}",
            )
            client = SubscriptionManager(session)
            # Recorded now, sent by the replay once the socket opens
            client.subscribe([stream])
            session.connect()
            self.clients.append(client)

            if self.connect_jitter_seconds:
                await asyncio.sleep(random.uniform(0, self.connect_jitter_seconds))
            if (i + 1) % STAGGER_BATCH == 0:
                await asyncio.sleep(1)

        logger.info("All connection and subscription attempts initiated.")

    async def monitor(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.census_interval_seconds)
            except asyncio.TimeoutError:
                logger.info(f"Current open connections: {self.open_count()}/{self.connections}")

    def stop(self) -> None:
        self._stop_event.set()

    def close_all(self) -> None:
        logger.info("Closing all connections...")
        for client in self.clients:
            client.session.close()

    async def run(self) -> int:
        """Run the test; returns the number of connections open at the end."""
        monitor_task = asyncio.ensure_future(self.monitor())
        try:
            await self.start_clients()
            logger.info(f"Stress test will run for {self.duration_seconds}s. Monitoring connections...")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.duration_seconds)
            except asyncio.TimeoutError:
                logger.info("Stress test duration finished.")
        finally:
            self.stop()
            await monitor_task
            open_at_end = self.open_count()
            self.close_all()

        logger.info(f"Stress test complete. {open_at_end}/{self.connections} connections were open at the end.")
        return open_at_end


async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Binance stream connection stress test")
    parser.add_argument("--connections", type=int, default=100)
    parser.add_argument("--duration", type=float, default=60.0, help="seconds")
    parser.add_argument("--census-interval", type=float, default=30.0, help="seconds")
    args = parser.parse_args(argv)

    settings = load_settings(os.getenv("CONFIG_FILE"))
    setup_logging(settings.logging, f"{settings.service_name}-stress")

    test = StressTest(
        settings,
        connections=args.connections,
        duration_seconds=args.duration,
        census_interval_seconds=args.census_interval,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, test.stop)

    return await test.run()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
