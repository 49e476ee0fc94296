"""Unit tests for the health endpoint.

Uses the Quart test client; no server is bound.
"""

from unittest.mock import AsyncMock

import pytest

from pxeserver.health.endpoint import HealthEndpoint
from pxeserver.health.monitor import HealthReport
from pxeserver.health.probes import HealthCheckResult


def report(*passed):
    return HealthReport(
        results=tuple(
            HealthCheckResult(name=f"check_{i}", passed=ok, message="ok" if ok else "failed")
            for i, ok in enumerate(passed)
        )
    )


class TestHealthRoute:
    """Tests for GET /health."""

    @pytest.mark.asyncio
    async def test_starting_before_first_report(self, server_config):
        """Test that the endpoint is unhealthy until a report exists."""
        endpoint = HealthEndpoint(server_config, last_report=lambda: None)

        response = await endpoint.app.test_client().get("/health")

        assert response.status_code == 503
        data = await response.get_json()
        assert data["status"] == "starting"

    @pytest.mark.asyncio
    async def test_healthy_report(self, server_config):
        """Test that a fully passing report returns 200."""
        endpoint = HealthEndpoint(server_config, last_report=lambda: report(True, True))

        response = await endpoint.app.test_client().get("/health")

        assert response.status_code == 200
        data = await response.get_json()
        assert data["status"] == "healthy"
        assert data["total"] == 2

    @pytest.mark.asyncio
    async def test_unhealthy_report(self, server_config):
        """Test that any failing check returns 503 with the failing check listed."""
        endpoint = HealthEndpoint(server_config, last_report=lambda: report(True, False))

        response = await endpoint.app.test_client().get("/health")

        assert response.status_code == 503
        data = await response.get_json()
        assert data["failures"] == 1
        assert data["checks"][1]["passed"] is False

    @pytest.mark.asyncio
    async def test_refresh_runs_fresh_pass(self, server_config):
        """Test that ?refresh=1 runs the monitor instead of using the cached report."""
        refresh = AsyncMock(return_value=report(True))
        endpoint = HealthEndpoint(server_config, last_report=lambda: report(False), refresh=refresh)
        client = endpoint.app.test_client()

        response = await client.get("/health", query_string={"refresh": "1"})

        assert response.status_code == 200
        refresh.assert_awaited_once()

        response = await client.get("/health")
        assert response.status_code == 503
        assert refresh.await_count == 1


class TestMetricsRoute:
    """Tests for GET /metrics."""

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, server_config):
        """Test that Prometheus metrics are served."""
        endpoint = HealthEndpoint(server_config, last_report=lambda: None)

        response = await endpoint.app.test_client().get("/metrics")

        assert response.status_code == 200
        body = await response.get_data(as_text=True)
        assert "pxe_health_check_failures" in body
