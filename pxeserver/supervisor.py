"""
PXE server supervisor.

Drives the lifecycle: initialize, render configuration, launch daemons,
verify startup health, then monitor until a termination signal arrives and
shut everything down in reverse order.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Optional, Sequence

import structlog

from pxeserver.config import ServerConfig
from pxeserver.exceptions import ConfigRenderError, LaunchError
from pxeserver.health import metrics
from pxeserver.health.endpoint import HealthEndpoint
from pxeserver.health.monitor import HealthMonitor, HealthReport, build_probes
from pxeserver.health.probes import HealthProbe
from pxeserver.render import ConfigRenderer
from pxeserver.services.descriptors import DHCP_PORT, ServiceDescriptor, build_descriptors
from pxeserver.services.launcher import ServiceLauncher
from pxeserver.services.process import ProcessHandle
from pxeserver.services.shutdown import ShutdownCoordinator

logger = structlog.get_logger()


class Phase(str, Enum):
    INITIALIZING = "initializing"
    RENDERING = "rendering"
    LAUNCHING = "launching"
    MONITORING = "monitoring"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


_PHASE_ORDER = list(Phase)


@dataclass
class SupervisorState:
    """The supervisor's single mutable state record."""

    phase: Phase = Phase.INITIALIZING
    # Insertion order is start order
    processes: dict[str, ProcessHandle] = field(default_factory=dict)
    last_report: Optional[HealthReport] = None

    def transition(self, phase: Phase) -> None:
        """Move to a later phase. Any phase may go straight to STOPPED."""
        if phase is not Phase.STOPPED and _PHASE_ORDER.index(phase) < _PHASE_ORDER.index(self.phase):
            raise RuntimeError(f"invalid phase transition {self.phase.value} -> {phase.value}")
        if phase is not self.phase:
            logger.info("phase_changed", previous=self.phase.value, phase=phase.value)
        self.phase = phase


class Supervisor:
    """Top-level lifecycle coordinator for the managed daemons."""

    def __init__(
        self,
        config: ServerConfig,
        descriptors: Optional[Sequence[ServiceDescriptor]] = None,
        renderer: Optional[ConfigRenderer] = None,
        launcher: Optional[ServiceLauncher] = None,
        coordinator: Optional[ShutdownCoordinator] = None,
        probes: Optional[Sequence[HealthProbe]] = None,
    ):
        self.config = config
        self.state = SupervisorState()
        self.descriptors = list(descriptors) if descriptors is not None else None
        self.renderer = renderer
        self.launcher = launcher or ServiceLauncher.from_config(config)
        self.coordinator = coordinator or ShutdownCoordinator.from_config(config)
        self.probes = list(probes) if probes is not None else None

        self.monitor: Optional[HealthMonitor] = None
        self.endpoint: Optional[HealthEndpoint] = None
        self.stop_event = asyncio.Event()
        self.exit_code = 0
        self.tasks: list[asyncio.Task] = []
        self._failure_streaks: dict[str, int] = {}

    def request_stop(self, reason: str = "requested") -> None:
        """Ask the supervisor to shut down. Safe to call more than once."""
        if not self.stop_event.is_set():
            logger.info("shutdown_signal_received", reason=reason, phase=self.state.phase.value)
            self.stop_event.set()

    async def run(self) -> int:
        """Run until stopped. Returns the process exit code."""
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)

        try:
            await self._run_phases()
        except Exception as e:
            logger.error(
                "supervisor_fatal_error",
                error=str(e),
                phase=self.state.phase.value,
            )
            self.exit_code = 1
            await self._shutdown()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

        self.state.transition(Phase.STOPPED)
        summary = logger.info if self.exit_code == 0 else logger.error
        summary(
            "supervisor_stopped",
            exit_code=self.exit_code,
            services=list(self.state.processes),
        )
        return self.exit_code

    def initialize(self) -> None:
        """Resolve the effective configuration and build collaborators."""
        self.config = self.config.with_detected_address()
        self.config.log_effective()

        if self.descriptors is None:
            self.descriptors = build_descriptors(self.config)
        if self.renderer is None:
            self.renderer = ConfigRenderer(self.config)

        logger.info("supervisor_initialized", services=[d.name for d in self.descriptors])

    async def _run_phases(self) -> None:
        self.initialize()

        self.state.transition(Phase.RENDERING)
        try:
            await self.renderer.run()
        except ConfigRenderError as e:
            logger.error("config_render_failed", config=e.config_name, error=str(e))
            self.exit_code = 1
            return

        if self.stop_event.is_set():
            return

        self.state.transition(Phase.LAUNCHING)
        try:
            launched, _ = await self._unless_stopped(
                self.launcher.launch_all(self.descriptors, self.state.processes)
            )
        except LaunchError as e:
            logger.error("daemon_launch_failed", service=e.service, error=str(e))
            self.exit_code = 1
            await self._shutdown()
            return

        if launched:
            self.state.transition(Phase.MONITORING)
            await self._monitor()

        await self._shutdown()

    async def _monitor(self) -> None:
        probes = self.probes
        if probes is None:
            probes = build_probes(self.config, self.descriptors, self.state.processes)
        self.monitor = HealthMonitor(probes, timeout=self.config.health_check_timeout)

        if self.config.health_endpoint_enabled:
            self.endpoint = HealthEndpoint(
                self.config,
                last_report=lambda: self.state.last_report,
                refresh=self.monitor.run,
            )
            self.tasks.append(asyncio.create_task(self.endpoint.start()))

        completed, report = await self._unless_stopped(self.monitor.run())
        if not completed:
            return
        self.state.last_report = report

        failed = [result.name for result in report.failed()]
        if report.healthy:
            logger.info("startup_health_check_passed", total=len(report.results))
        elif self.config.startup_health_required:
            logger.error("startup_health_check_failed", failed=failed)
            self.exit_code = 1
            return
        else:
            logger.warning("startup_health_check_degraded", failed=failed)

        logger.info(
            "pxe_server_ready",
            services=list(self.state.processes),
            dhcp=f"{DHCP_PORT}/udp",
            tftp=f"{self.config.tftp_port}/udp" if "tftp" in self.state.processes else None,
            http=f"{self.config.http_port}/tcp",
            boot_url=self.config.get_boot_url(),
        )

        while not await self._wait_for_stop(self.config.health_check_interval):
            completed, report = await self._unless_stopped(self.monitor.run())
            if not completed:
                return
            self.state.last_report = report

            # Steady-state failures are reported, never fatal
            if not report.healthy:
                logger.warning(
                    "health_check_degraded",
                    failures=report.failures,
                    failed=[result.name for result in report.failed()],
                )
            completed, _ = await self._unless_stopped(self._apply_restart_policy(report))
            if not completed:
                return

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to timeout; returns True as soon as a stop is requested."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _unless_stopped(self, awaitable: Awaitable[Any]) -> tuple[bool, Any]:
        """
        Run awaitable unless a stop request arrives first.

        Returns:
            (True, result) if it completed, (False, None) if it was
            cancelled by a stop request.
        """
        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self.stop_event.wait())
        try:
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if task.cancelled():
            logger.info("phase_interrupted", phase=self.state.phase.value)
            return False, None
        return True, task.result()

    async def _apply_restart_policy(self, report: HealthReport) -> None:
        threshold = self.config.restart_after_failures
        if threshold <= 0:
            return

        failing = {result.service for result in report.failed() if result.service}
        for descriptor in self.descriptors:
            name = descriptor.name
            if name not in failing:
                self._failure_streaks[name] = 0
                continue

            self._failure_streaks[name] = self._failure_streaks.get(name, 0) + 1
            if self._failure_streaks[name] >= threshold:
                await self._restart(descriptor)
                self._failure_streaks[name] = 0

    async def _restart(self, descriptor: ServiceDescriptor) -> None:
        name = descriptor.name
        logger.warning(
            "daemon_restarting",
            service=name,
            consecutive_failures=self._failure_streaks.get(name, 0),
        )
        metrics.DAEMON_RESTARTS.labels(service=name).inc()

        handle = self.state.processes.get(name)
        if handle is not None:
            try:
                await self.coordinator.stop_one(handle)
            except asyncio.CancelledError:
                # Shutdown preempted the graceful stop of a failing daemon
                handle.kill()
                raise

        if self.stop_event.is_set():
            return

        try:
            # Assigning to the existing key keeps the original start order
            self.state.processes[name] = await self.launcher.launch(descriptor)
        except LaunchError as e:
            logger.error("daemon_restart_failed", service=name, error=str(e))

    async def _shutdown(self) -> None:
        if self.state.phase in (Phase.SHUTTING_DOWN, Phase.STOPPED):
            return
        self.state.transition(Phase.SHUTTING_DOWN)

        if self.endpoint:
            await self.endpoint.stop()

        outcomes = await self.coordinator.shutdown(list(self.state.processes.values()))
        for outcome in outcomes:
            if outcome.error:
                logger.warning("daemon_stop_incomplete", service=outcome.name, error=outcome.error)

        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.warning("signal_handler_unavailable", signal=sig.name)
        return installed
