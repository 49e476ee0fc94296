"""
PXE server entry points.

``pxeserver`` runs the supervisor until a termination signal arrives.
``pxeserver-healthcheck`` asks the running supervisor for a fresh health
report and exits 0 (healthy) or 1 (unhealthy or unreachable), for use as
a container health check.
"""

import asyncio
import json
import logging
import sys

import httpx
import structlog

from pxeserver import __version__
from pxeserver.config import ServerConfig
from pxeserver.supervisor import Supervisor

logger = structlog.get_logger()


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structured logging."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _load_config() -> ServerConfig:
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        configure_logging()
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level, config.log_format)
    return config


async def main(config: ServerConfig) -> int:
    """Run the supervisor."""
    logger.info("pxe_server_starting", version=__version__)
    supervisor = Supervisor(config)
    return await supervisor.run()


async def check_health(config: ServerConfig) -> int:
    """Query the supervisor's health endpoint for a fresh report."""
    host = config.health_bind
    if host in ("", "0.0.0.0", "::"):
        host = "127.0.0.1"
    url = f"http://{host}:{config.health_port}/health"

    try:
        async with httpx.AsyncClient(timeout=config.health_check_timeout + 5.0) as client:
            response = await client.get(url, params={"refresh": "1"})
    except httpx.HTTPError as e:
        logger.error("health_endpoint_unreachable", url=url, error=str(e))
        return 1

    try:
        report = response.json()
    except ValueError:
        report = {"status": "unknown", "http_status": response.status_code}

    print(json.dumps(report, indent=2))
    return 0 if response.status_code == 200 else 1


def run() -> None:
    """Console entry point for the supervisor."""
    config = _load_config()
    sys.exit(asyncio.run(main(config)))


def healthcheck() -> None:
    """Console entry point for the container health check."""
    config = _load_config()
    sys.exit(asyncio.run(check_health(config)))


if __name__ == "__main__":
    run()
