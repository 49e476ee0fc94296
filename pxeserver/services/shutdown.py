"""
Graceful shutdown of managed daemons.

Daemons are stopped in reverse start order. Each gets its native graceful
stop, a bounded wait, and then a forced kill. A failure on one daemon is
logged and never blocks the rest.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import structlog

from pxeserver.config import ServerConfig
from pxeserver.services.process import ProcessHandle, run_command

logger = structlog.get_logger()


class ShutdownState(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class StopOutcome:
    """How one daemon was stopped."""

    name: str
    graceful: bool
    forced: bool = False
    error: Optional[str] = None


class ShutdownCoordinator:
    """Stops daemons in reverse start order with bounded waits."""

    def __init__(self, stop_timeout: float = 10.0, kill_timeout: float = 5.0):
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self.state = ShutdownState.RUNNING

    @classmethod
    def from_config(cls, config: ServerConfig) -> "ShutdownCoordinator":
        return cls(stop_timeout=config.daemon_stop_timeout)

    async def shutdown(self, handles: Sequence[ProcessHandle]) -> list[StopOutcome]:
        """
        Stop every handle, last started first.

        Args:
            handles: Process handles in start order.

        Returns:
            One StopOutcome per handle, in the order they were stopped.
        """
        if self.state is not ShutdownState.RUNNING:
            logger.warning("shutdown_already_requested", state=self.state.value)
            return []

        self.state = ShutdownState.STOPPING
        ordered = list(reversed(handles))
        logger.info("daemons_stopping", order=[handle.name for handle in ordered])

        outcomes = []
        for handle in ordered:
            outcomes.append(await self.stop_one(handle))

        self.state = ShutdownState.STOPPED
        logger.info(
            "daemons_stopped",
            forced=[outcome.name for outcome in outcomes if outcome.forced],
        )
        return outcomes

    async def stop_one(self, handle: ProcessHandle) -> StopOutcome:
        """Stop one daemon: graceful stop, bounded wait, then forced kill."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stop_timeout
        error = None

        if not handle.is_running():
            logger.info("daemon_already_stopped", service=handle.name, returncode=handle.returncode)
            handle.invalidate()
            return StopOutcome(handle.name, graceful=True)

        try:
            await self._request_stop(handle, deadline)
            if await handle.wait(deadline - loop.time()):
                logger.info("daemon_stopped", service=handle.name, returncode=handle.returncode)
                handle.invalidate()
                return StopOutcome(handle.name, graceful=True)
            logger.warning(
                "daemon_stop_timeout_forcing",
                service=handle.name,
                timeout=self.stop_timeout,
            )
        except Exception as e:
            error = str(e)
            logger.error("daemon_stop_error", service=handle.name, error=error)

        if handle.returncode is not None:
            handle.invalidate()
            return StopOutcome(handle.name, graceful=False, error=error)

        try:
            handle.kill()
            if not await handle.wait(self.kill_timeout):
                logger.error("daemon_kill_timeout", service=handle.name, pid=handle.pid)
                error = error or "process did not exit after SIGKILL"
            else:
                logger.warning("daemon_killed", service=handle.name)
        except Exception as e:
            error = error or str(e)
            logger.error("daemon_kill_error", service=handle.name, error=str(e))
        finally:
            handle.invalidate()

        return StopOutcome(handle.name, graceful=False, forced=True, error=error)

    async def _request_stop(self, handle: ProcessHandle, deadline: float) -> None:
        stop_command = handle.descriptor.stop_command
        if not stop_command:
            handle.terminate()
            return

        remaining = max(deadline - asyncio.get_running_loop().time(), 0.1)
        result = await run_command(stop_command, remaining)
        if result.timed_out:
            logger.warning("daemon_stop_command_timeout", service=handle.name)
        elif not result.ok:
            logger.warning(
                "daemon_stop_command_failed",
                service=handle.name,
                returncode=result.returncode,
                output=result.output,
            )
            handle.terminate()
