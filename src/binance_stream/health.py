"""HTTP endpoints for the stream service."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST


logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler. ``service`` must provide ``async health_check() -> dict``."""

    def __init__(self, service):
        self.service = service

    async def index(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "Welcome to the Binance stream service!"})

    async def health(self, request: web.Request) -> web.Response:
        try:
            health_data = await self.service.health_check()
            status = 200 if health_data["status"] == "healthy" else 503
            return web.json_response(health_data, status=status, dumps=_dumps)

        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {"status": "unhealthy", "error": str(e), "timestamp": _now()},
                status=503
            )

    async def ready(self, request: web.Request) -> web.Response:
        try:
            health_data = await self.service.health_check()

            # Degraded (e.g. reconnecting) still counts as ready
            is_ready = health_data["status"] in ["healthy", "degraded"]
            return web.json_response(
                {"ready": is_ready, "status": health_data["status"], "timestamp": _now()},
                status=200 if is_ready else 503
            )

        except Exception as e:
            logger.error(f"Readiness check failed: {e}", exc_info=True)
            return web.json_response(
                {"ready": False, "error": str(e), "timestamp": _now()},
                status=503
            )

    async def live(self, request: web.Request) -> web.Response:
        return web.json_response({"alive": True, "timestamp": _now()})

    async def metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=self.service.metrics.render(), headers={"Content-Type": CONTENT_TYPE_LATEST})


def _dumps(data) -> str:
    # health payloads carry datetimes and enums from the session stats
    return json.dumps(data, default=str)


def create_app(service) -> web.Application:
    """Build the aiohttp application serving the service endpoints."""
    app = web.Application()
    handler = HealthCheckHandler(service)
    app.router.add_get('/', handler.index)
    app.router.add_get('/health', handler.health)
    app.router.add_get('/ready', handler.ready)
    app.router.add_get('/live', handler.live)
    if getattr(service, 'metrics', None) is not None:
        app.router.add_get('/metrics', handler.metrics)
    return app


class HealthCheckServer:
    """HTTP server for the service endpoints."""

    def __init__(self, service, host: str = "0.0.0.0", port: int = 3000):
        self.service = service
        self.host = host
        self.port = port
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        logger.info(f"Starting HTTP server on {self.host}:{self.port}")

        self.runner = web.AppRunner(create_app(self.service))
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Server is running on http://{self.host}:{self.port}")

    async def stop(self):
        logger.info("Stopping HTTP server")

        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        logger.info("Server closed.")
