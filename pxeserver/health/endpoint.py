"""
HTTP health endpoint for container and orchestrator liveness checks.

Serves the last health report (or a fresh one on request) and the
Prometheus metrics.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog
from hypercorn.asyncio import serve
from hypercorn.config import Config
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from quart import Quart, Response, jsonify, request

from pxeserver.config import ServerConfig
from pxeserver.health.monitor import HealthReport

logger = structlog.get_logger()


class HealthEndpoint:
    """Health and metrics HTTP server."""

    def __init__(
        self,
        config: ServerConfig,
        last_report: Callable[[], Optional[HealthReport]],
        refresh: Optional[Callable[[], Awaitable[HealthReport]]] = None,
    ):
        self.config = config
        self.last_report = last_report
        self.refresh = refresh
        self.app = Quart(__name__)
        self._shutdown = asyncio.Event()

        self._register_routes()

    def _register_routes(self):
        """Register HTTP routes."""

        @self.app.route("/health")
        async def health():
            """
            Health check endpoint.

            200 only when every check in the report passed; 503 otherwise,
            including before the first report exists.
            """
            if request.args.get("refresh") in ("1", "true") and self.refresh:
                report = await self.refresh()
            else:
                report = self.last_report()

            if report is None:
                return jsonify({"status": "starting", "checks": []}), 503

            return jsonify(report.to_dict()), 200 if report.healthy else 503

        @self.app.route("/metrics")
        async def metrics():
            """Prometheus metrics endpoint."""
            return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    async def start(self):
        """Serve until stop() is called."""
        config = Config()
        config.bind = [f"{self.config.health_bind}:{self.config.health_port}"]
        config.accesslog = None
        config.errorlog = "-"

        logger.info(
            "health_endpoint_starting",
            bind=self.config.health_bind,
            port=self.config.health_port,
        )

        try:
            await serve(self.app, config, shutdown_trigger=self._shutdown.wait)
        except Exception as e:
            logger.error("health_endpoint_error", error=str(e))
            raise

    async def stop(self):
        """Stop the server."""
        self._shutdown.set()
        logger.info("health_endpoint_stopped")
