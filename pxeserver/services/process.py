"""
Process ownership and subprocess helpers.

A ProcessHandle is the single source of truth for whether a managed
daemon is running; no PID files are consulted.
"""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from pxeserver.services.descriptors import ServiceDescriptor


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a short-lived command such as a config syntax check."""

    returncode: Optional[int]
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


async def run_command(argv: Sequence[str], timeout: float) -> CommandResult:
    """
    Run a command to completion with a hard timeout.

    A command that cannot be started is reported with returncode 127.
    A command that outlives the timeout is killed and reported as timed out.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except (FileNotFoundError, PermissionError) as e:
        return CommandResult(returncode=127, output=str(e))

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.CancelledError:
        _kill_quietly(process)
        raise
    except asyncio.TimeoutError:
        _kill_quietly(process)
        await process.wait()
        return CommandResult(
            returncode=None,
            output=f"{argv[0]} timed out after {timeout:g}s",
            timed_out=True,
        )

    return CommandResult(
        returncode=process.returncode,
        output=stdout.decode("utf-8", errors="ignore").strip() if stdout else "",
    )


def _kill_quietly(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


class ProcessHandle:
    """Owned handle binding a ServiceDescriptor to a running OS process."""

    def __init__(self, descriptor: "ServiceDescriptor", process: asyncio.subprocess.Process):
        self.descriptor = descriptor
        self.process = process
        self.started_at = datetime.now(timezone.utc)
        self.output_task: Optional[asyncio.Task] = None
        self._invalidated = False

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_running(self) -> bool:
        return not self._invalidated and self.process.returncode is None

    async def wait(self, timeout: float) -> bool:
        """Wait for the process to exit. Returns True if it has exited."""
        if self.process.returncode is not None:
            return True
        try:
            await asyncio.wait_for(self.process.wait(), timeout=max(timeout, 0))
            return True
        except asyncio.TimeoutError:
            return False

    def send_signal(self, sig: int) -> None:
        if self.process.returncode is not None:
            return
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            pass

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def invalidate(self) -> None:
        """Mark the handle as no longer running; it is never reused."""
        self._invalidated = True
        if self.output_task and not self.output_task.done():
            self.output_task.cancel()

    def __repr__(self) -> str:
        state = "running" if self.is_running() else "stopped"
        return f"<ProcessHandle {self.name} pid={self.pid} {state}>"
