"""
Health monitor.

Runs every probe concurrently, each under its own timeout, and joins the
results into a single HealthReport. A run keeps no state on the monitor,
so the supervisor loop and the health endpoint may run it at the same
time.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import structlog

from pxeserver.config import ServerConfig
from pxeserver.health import metrics
from pxeserver.health.probes import (
    DiskSpaceProbe,
    FilesPresentProbe,
    HealthCheckResult,
    HealthProbe,
    NetworkProbe,
    PortListeningProbe,
    ProcessAliveProbe,
)
from pxeserver.render import REQUIRED_BOOT_FILES

if TYPE_CHECKING:
    from pxeserver.services.descriptors import ServiceDescriptor
    from pxeserver.services.process import ProcessHandle

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Aggregated results of one monitoring pass."""

    results: tuple[HealthCheckResult, ...]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if not result.passed)

    @property
    def healthy(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.healthy else 1

    def failed(self) -> list[HealthCheckResult]:
        return [result for result in self.results if not result.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self.healthy else "unhealthy",
            "started_at": self.started_at.isoformat(),
            "total": len(self.results),
            "passed": len(self.results) - self.failures,
            "failures": self.failures,
            "checks": [result.to_dict() for result in self.results],
        }


class HealthMonitor:
    """Runs the full probe battery and aggregates pass/fail."""

    def __init__(self, probes: Sequence[HealthProbe], timeout: float = 10.0):
        self.probes = tuple(probes)
        self.timeout = timeout

    async def run(self) -> HealthReport:
        """Run all probes concurrently and return a fresh report."""
        started_at = datetime.now(timezone.utc)
        results = await asyncio.gather(*(probe.run(self.timeout) for probe in self.probes))
        report = HealthReport(results=tuple(results), started_at=started_at)
        self._record(report)
        return report

    def _record(self, report: HealthReport) -> None:
        for result in report.results:
            metrics.HEALTH_CHECK_PASSED.labels(check=result.name).set(1 if result.passed else 0)
            metrics.HEALTH_CHECK_DURATION.labels(check=result.name).set(result.duration)
            if not result.passed:
                logger.warning(
                    "health_check_failed",
                    check=result.name,
                    service=result.service,
                    message=result.message,
                )
            else:
                logger.debug("health_check_passed", check=result.name, message=result.message)

        metrics.HEALTH_CHECK_FAILURES.set(report.failures)
        metrics.HEALTH_RUNS.labels(outcome="healthy" if report.healthy else "unhealthy").inc()
        logger.info(
            "health_check_complete",
            passed=len(report.results) - report.failures,
            total=len(report.results),
            healthy=report.healthy,
        )


def build_probes(
    config: ServerConfig,
    descriptors: Sequence["ServiceDescriptor"],
    processes: Mapping[str, "ProcessHandle"],
) -> list[HealthProbe]:
    """
    Build the full probe battery.

    Per daemon: process alive, port listening, then its functional probes.
    Host probes come last.
    """
    probes: list[HealthProbe] = []
    for descriptor in descriptors:
        probes.append(ProcessAliveProbe(descriptor.name, partial(processes.get, descriptor.name)))
        if descriptor.port is not None:
            probes.append(PortListeningProbe(descriptor.name, descriptor.port, descriptor.transport))
        probes.extend(descriptor.functional_probes)

    probes.append(
        FilesPresentProbe(
            "pxe_files_present",
            [config.http_root / name for name in REQUIRED_BOOT_FILES],
        )
    )
    probes.append(DiskSpaceProbe(config.http_root, config.disk_usage_threshold))
    probes.append(
        NetworkProbe(
            config.network_check_host,
            config.network_check_port,
            timeout=config.health_check_timeout,
        )
    )
    return probes
