"""Unit tests for HealthMonitor and probe assembly.

Tests:
- Healthy only when every probe passes
- Concurrent probe execution and concurrent runs
- Report serialization
- Probe battery built from the daemon descriptors
"""

import asyncio
from dataclasses import replace
from types import SimpleNamespace

import pytest

from pxeserver.health.monitor import HealthMonitor, build_probes
from pxeserver.health.probes import FilesPresentProbe, HealthProbe, ProcessAliveProbe
from pxeserver.render import REQUIRED_BOOT_FILES
from pxeserver.services.descriptors import build_descriptors


class StaticProbe(HealthProbe):
    def __init__(self, name, passed=True, delay=0.0, service=None):
        super().__init__(name, service)
        self.passed = passed
        self.delay = delay

    async def check(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.passed, "ok" if self.passed else "failed"


def running(pid):
    return SimpleNamespace(is_running=lambda: True, pid=pid, returncode=None)


class TestHealthMonitor:
    """Tests for running the probe battery."""

    @pytest.mark.asyncio
    async def test_all_pass_is_healthy(self):
        """Test that a report with no failures is healthy."""
        monitor = HealthMonitor([StaticProbe("a"), StaticProbe("b"), StaticProbe("c")])

        report = await monitor.run()

        assert report.healthy
        assert report.exit_code == 0
        assert report.failures == 0
        assert [result.name for result in report.results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_single_failure_is_unhealthy(self):
        """Test that one failing probe makes the whole report unhealthy."""
        monitor = HealthMonitor([StaticProbe("a"), StaticProbe("b", passed=False), StaticProbe("c")])

        report = await monitor.run()

        assert not report.healthy
        assert report.exit_code == 1
        assert report.failures == 1
        assert [result.name for result in report.failed()] == ["b"]

    @pytest.mark.asyncio
    async def test_timed_out_probe_is_a_failure(self):
        """Test that a hung probe fails without losing the other results."""
        monitor = HealthMonitor([StaticProbe("fast"), StaticProbe("hung", delay=5)], timeout=0.2)

        report = await monitor.run()

        assert len(report.results) == 2
        assert report.results[0].passed
        assert not report.results[1].passed
        assert "timed out" in report.results[1].message

    @pytest.mark.asyncio
    async def test_probes_run_concurrently(self):
        """Test that a pass takes about as long as its slowest probe."""
        monitor = HealthMonitor([StaticProbe(f"p{i}", delay=0.2) for i in range(5)])

        loop = asyncio.get_running_loop()
        started = loop.time()
        report = await monitor.run()

        assert report.healthy
        assert loop.time() - started < 0.8

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_independent(self):
        """Test that overlapping runs each produce a complete report."""
        monitor = HealthMonitor([StaticProbe("a", delay=0.1), StaticProbe("b", delay=0.05)])

        first, second = await asyncio.gather(monitor.run(), monitor.run())

        assert first is not second
        assert [result.name for result in first.results] == ["a", "b"]
        assert [result.name for result in second.results] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_report_to_dict(self):
        """Test the serialized report."""
        monitor = HealthMonitor([StaticProbe("a"), StaticProbe("b", passed=False, service="http")])

        data = (await monitor.run()).to_dict()

        assert data["status"] == "unhealthy"
        assert data["total"] == 2
        assert data["passed"] == 1
        assert data["failures"] == 1
        assert data["checks"][1]["service"] == "http"


class TestBuildProbes:
    """Tests for assembling the probe battery."""

    def test_probe_order(self, server_config):
        """Test per-daemon probes in start order followed by host probes."""
        descriptors = build_descriptors(server_config)

        names = [probe.name for probe in build_probes(server_config, descriptors, {})]

        assert names == [
            "dhcp_process", "dhcp_port", "dhcp_config",
            "tftp_process", "tftp_port", "tftp_read",
            "http_process", "http_port", "http_config", "http_health", "pxe_files_http",
            "pxe_files_present", "disk_space", "network",
        ]

    def test_tftp_disabled(self, server_config):
        """Test that no TFTP probes exist when TFTP is disabled."""
        config = replace(server_config, tftp_enabled=False)
        descriptors = build_descriptors(config)

        names = [probe.name for probe in build_probes(config, descriptors, {})]

        assert not any(name.startswith("tftp") for name in names)

    @pytest.mark.asyncio
    async def test_process_probes_follow_replaced_handles(self, server_config):
        """Test that process probes see handles added after the probes were built."""
        processes = {}
        descriptors = build_descriptors(server_config)
        probes = build_probes(server_config, descriptors, processes)
        dhcp_probe = next(probe for probe in probes if probe.name == "dhcp_process")

        assert not (await dhcp_probe.run(1.0)).passed
        processes["dhcp"] = running(100)
        assert (await dhcp_probe.run(1.0)).passed

    @pytest.mark.asyncio
    async def test_missing_boot_loader_fails_while_daemons_run(self, server_config):
        """Test that a missing pxelinux.0 fails the image check but not the process checks."""
        root = server_config.http_root
        (root / "pxelinux.cfg").mkdir(parents=True)
        (root / "menu.c32").write_bytes(b"menu")
        (root / "pxelinux.cfg" / "default").write_text("DEFAULT menu.c32\n")
        processes = {"dhcp": running(100), "http": running(101)}

        monitor = HealthMonitor(
            [
                ProcessAliveProbe("dhcp", lambda: processes.get("dhcp")),
                ProcessAliveProbe("http", lambda: processes.get("http")),
                FilesPresentProbe("pxe_files_present", [root / name for name in REQUIRED_BOOT_FILES]),
            ]
        )

        report = await monitor.run()
        results = {result.name: result for result in report.results}

        assert not report.healthy
        assert results["dhcp_process"].passed
        assert results["http_process"].passed
        assert not results["pxe_files_present"].passed
        assert "pxelinux.0" in results["pxe_files_present"].message
