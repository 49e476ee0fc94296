"""
Daemon launcher.

Starts each managed daemon in dependency order and confirms it reached a
running state before moving on to the next one.
"""

import asyncio
from typing import MutableMapping, Sequence

import structlog

from pxeserver.config import ServerConfig
from pxeserver.exceptions import LaunchError
from pxeserver.health.probes import port_bound_by
from pxeserver.services.descriptors import ServiceDescriptor
from pxeserver.services.process import ProcessHandle, run_command

logger = structlog.get_logger()


class ServiceLauncher:
    """Launches daemons and confirms they are running."""

    def __init__(
        self,
        start_timeout: float = 3.0,
        validate_timeout: float = 10.0,
        settle_time: float = 0.5,
        poll_interval: float = 0.1,
    ):
        self.start_timeout = start_timeout
        self.validate_timeout = validate_timeout
        self.settle_time = min(settle_time, start_timeout)
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: ServerConfig) -> "ServiceLauncher":
        return cls(
            start_timeout=config.daemon_start_timeout,
            validate_timeout=config.health_check_timeout,
        )

    async def launch(self, descriptor: ServiceDescriptor) -> ProcessHandle:
        """
        Validate, spawn, and confirm one daemon.

        Raises:
            LaunchError: if the config check fails, the command cannot be
                executed, or the daemon is not running within the timeout.
        """
        logger.info("daemon_starting", service=descriptor.name, command=" ".join(descriptor.command))

        if descriptor.validate_command:
            result = await run_command(descriptor.validate_command, self.validate_timeout)
            if not result.ok:
                logger.error(
                    "daemon_config_test_failed",
                    service=descriptor.name,
                    output=result.output,
                )
                raise LaunchError(descriptor.name, "configuration test failed")

        try:
            process = await asyncio.create_subprocess_exec(
                *descriptor.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                # Keep terminal signals away from daemons; shutdown is ours
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error("daemon_exec_failed", service=descriptor.name, error=str(e))
            raise LaunchError(descriptor.name, f"cannot execute {descriptor.command[0]}") from e

        handle = ProcessHandle(descriptor, process)
        handle.output_task = asyncio.create_task(self._relay_output(handle))

        try:
            await self._confirm_running(handle)
        except (LaunchError, asyncio.CancelledError):
            handle.kill()
            await handle.wait(1.0)
            handle.invalidate()
            raise

        logger.info(
            "daemon_started",
            service=descriptor.name,
            pid=handle.pid,
            port=descriptor.port,
            transport=descriptor.transport if descriptor.port else None,
        )
        return handle

    async def launch_all(
        self,
        descriptors: Sequence[ServiceDescriptor],
        processes: MutableMapping[str, ProcessHandle],
    ) -> None:
        """
        Launch descriptors in order, recording each handle in processes.

        Stops at the first failure; handles already launched stay in
        processes so the caller can tear them down.
        """
        for descriptor in descriptors:
            processes[descriptor.name] = await self.launch(descriptor)

    async def _confirm_running(self, handle: ProcessHandle) -> None:
        loop = asyncio.get_running_loop()
        descriptor = handle.descriptor
        started = loop.time()
        deadline = started + self.start_timeout

        while True:
            if not handle.is_running():
                logger.error(
                    "daemon_exited_during_startup",
                    service=descriptor.name,
                    returncode=handle.returncode,
                )
                raise LaunchError(
                    descriptor.name, f"exited during startup (exit code {handle.returncode})"
                )

            # A port held by some other process does not count
            ready = descriptor.port is None or await port_bound_by(
                handle.pid, descriptor.port, descriptor.transport
            )
            if ready and loop.time() - started >= self.settle_time:
                return

            if loop.time() >= deadline:
                logger.error(
                    "daemon_start_timeout",
                    service=descriptor.name,
                    timeout=self.start_timeout,
                )
                raise LaunchError(
                    descriptor.name, f"not running after {self.start_timeout:g}s"
                )

            await asyncio.sleep(self.poll_interval)

    async def _relay_output(self, handle: ProcessHandle) -> None:
        """Relay daemon stdout/stderr into the structured log."""
        stream = handle.process.stdout
        if stream is None:
            return

        try:
            async for line in stream:
                message = line.decode("utf-8", errors="ignore").strip()
                if message:
                    logger.info("daemon_output", service=handle.name, message=message)
        except Exception as e:
            logger.error("daemon_output_error", service=handle.name, error=str(e))
