"""
Health probes for the managed daemons and the host.

Each probe answers one narrow question. Probes never raise: a timeout or
an exception inside a check becomes a failed HealthCheckResult.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

import httpx
import psutil

from pxeserver.services.process import run_command

if TYPE_CHECKING:
    from pxeserver.services.process import ProcessHandle


@dataclass(frozen=True, slots=True)
class HealthCheckResult:
    """Outcome of one probe in one monitoring pass."""

    name: str
    passed: bool
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    service: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "service": self.service,
            "duration_ms": round(self.duration * 1000, 1),
        }


class HealthProbe(ABC):
    """A single health check, runnable on its own or from HealthMonitor."""

    def __init__(self, name: str, service: Optional[str] = None):
        self.name = name
        self.service = service

    @abstractmethod
    async def check(self) -> tuple[bool, str]:
        """Return (passed, message)."""

    async def run(self, timeout: float) -> HealthCheckResult:
        """Run the check with a timeout, converting any failure to a result."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            passed, message = await asyncio.wait_for(self.check(), timeout=timeout)
        except asyncio.TimeoutError:
            passed, message = False, f"timed out after {timeout:g}s"
        except Exception as e:
            passed, message = False, f"{type(e).__name__}: {e}"

        return HealthCheckResult(
            name=self.name,
            passed=passed,
            message=message,
            service=self.service,
            duration=loop.time() - started,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


async def port_listening(
    port: int,
    transport: str = "tcp",
    host: str = "127.0.0.1",
    timeout: float = 2.0,
) -> bool:
    """
    Check whether something is accepting on a port.

    TCP ports are checked by connecting. UDP has no handshake, so UDP
    ports are checked by looking for a bound socket.
    """
    if transport == "udp":
        return await asyncio.to_thread(_udp_port_bound, port)

    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def _udp_port_bound(port: int) -> bool:
    for conn in psutil.net_connections(kind="udp"):
        if conn.laddr and conn.laddr.port == port:
            return True
    return False


async def port_bound_by(pid: int, port: int, transport: str = "tcp") -> bool:
    """
    Check whether a process or one of its children holds a port.

    Unlike port_listening, a socket held by any other process does not
    count. Children are included because daemons such as nginx hand the
    listening socket to worker processes.
    """
    return await asyncio.to_thread(_port_bound_by, pid, port, transport)


def _port_bound_by(pid: int, port: int, transport: str) -> bool:
    try:
        parent = psutil.Process(pid)
        owners = {pid} | {child.pid for child in parent.children(recursive=True)}
    except psutil.NoSuchProcess:
        return False

    for conn in psutil.net_connections(kind=transport):
        if conn.pid not in owners or not conn.laddr or conn.laddr.port != port:
            continue
        if transport == "tcp" and conn.status != psutil.CONN_LISTEN:
            continue
        return True
    return False


class ProcessAliveProbe(HealthProbe):
    """Is the daemon's owned process still running?"""

    def __init__(self, service: str, lookup: Callable[[], Optional["ProcessHandle"]]):
        super().__init__(f"{service}_process", service)
        self.lookup = lookup

    async def check(self) -> tuple[bool, str]:
        handle = self.lookup()
        if handle is None:
            return False, f"{self.service} process was not launched"
        if handle.is_running():
            return True, f"{self.service} process is running (pid {handle.pid})"
        return False, f"{self.service} process is not running (exit code {handle.returncode})"


class PortListeningProbe(HealthProbe):
    """Is the daemon's port accepting connections?"""

    def __init__(self, service: str, port: int, transport: str = "tcp", host: str = "127.0.0.1"):
        super().__init__(f"{service}_port", service)
        self.port = port
        self.transport = transport
        self.host = host

    async def check(self) -> tuple[bool, str]:
        if await port_listening(self.port, self.transport, self.host):
            return True, f"port {self.port}/{self.transport} is listening"
        return False, f"port {self.port}/{self.transport} is not responding"


class CommandProbe(HealthProbe):
    """Does a command exit 0? Used for daemon config syntax checks."""

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        service: Optional[str] = None,
        timeout: float = 10.0,
    ):
        super().__init__(name, service)
        self.argv = tuple(argv)
        self.timeout = timeout

    async def check(self) -> tuple[bool, str]:
        result = await run_command(self.argv, self.timeout)
        if result.ok:
            return True, f"{self.argv[0]} check passed"
        if result.timed_out:
            return False, result.output
        detail = result.output.splitlines()[-1] if result.output else ""
        message = f"{self.argv[0]} check failed (exit code {result.returncode})"
        return False, f"{message}: {detail}" if detail else message


class HTTPProbe(HealthProbe):
    """Does a GET against the serving daemon succeed?"""

    def __init__(
        self,
        name: str,
        url: str,
        service: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(name, service)
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def check(self) -> tuple[bool, str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.url)
        except httpx.HTTPError as e:
            return False, f"GET {self.url} failed: {type(e).__name__}"

        if response.is_success:
            return True, f"GET {self.url} returned {response.status_code}"
        return False, f"GET {self.url} returned {response.status_code}"


class FilesPresentProbe(HealthProbe):
    """Do the required boot files exist?"""

    def __init__(self, name: str, paths: Sequence[Path], service: Optional[str] = None):
        super().__init__(name, service)
        self.paths = tuple(paths)

    async def check(self) -> tuple[bool, str]:
        missing = [str(path) for path in self.paths if not path.is_file()]
        if missing:
            return False, f"required PXE file missing: {', '.join(missing)}"
        return True, f"all {len(self.paths)} required PXE files present"


class DiskSpaceProbe(HealthProbe):
    """Is disk usage of the serving root below the threshold?"""

    def __init__(self, path: Path, threshold: float = 90.0):
        super().__init__("disk_space")
        self.path = path
        self.threshold = threshold

    async def check(self) -> tuple[bool, str]:
        usage = await asyncio.to_thread(psutil.disk_usage, str(self.path))
        message = f"disk usage {usage.percent:.1f}% (threshold {self.threshold:g}%)"
        return usage.percent < self.threshold, message


class NetworkProbe(HealthProbe):
    """Is outbound network reachability intact?"""

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        super().__init__("network")
        self.host = host
        self.port = port
        self.timeout = timeout

    async def check(self) -> tuple[bool, str]:
        if await port_listening(self.port, "tcp", self.host, self.timeout):
            return True, f"reached {self.host}:{self.port}"
        return False, f"cannot reach {self.host}:{self.port}"
