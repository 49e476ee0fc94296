"""
TFTP read probe.

Sends a single read request for a known boot file and waits for the first
DATA packet, then aborts the transfer with an ERROR packet so the server
does not retransmit.
"""

import asyncio
import struct
from typing import Optional

from pxeserver.health.probes import HealthProbe

OPCODE_RRQ = 1
OPCODE_DATA = 3
OPCODE_ERROR = 5


def build_read_request(filename: str, mode: str = "octet") -> bytes:
    return (
        struct.pack("!H", OPCODE_RRQ)
        + filename.encode("ascii")
        + b"\x00"
        + mode.encode("ascii")
        + b"\x00"
    )


def build_error(code: int, message: str) -> bytes:
    return struct.pack("!HH", OPCODE_ERROR, code) + message.encode("ascii") + b"\x00"


class _ReadRequestProtocol(asyncio.DatagramProtocol):
    def __init__(self, request: bytes, target: tuple[str, int], reply: asyncio.Future):
        self.request = request
        self.target = target
        self.reply = reply
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport
        transport.sendto(self.request, self.target)

    def datagram_received(self, data, addr):
        if not self.reply.done():
            self.reply.set_result((data, addr))

    def error_received(self, exc):
        if not self.reply.done():
            self.reply.set_exception(exc)


class TFTPReadProbe(HealthProbe):
    """Can a known boot file be fetched over TFTP?"""

    def __init__(
        self,
        filename: str = "pxelinux.0",
        host: str = "127.0.0.1",
        port: int = 69,
        service: Optional[str] = "tftp",
        timeout: float = 5.0,
    ):
        super().__init__("tftp_read", service)
        self.filename = filename
        self.host = host
        self.port = port
        self.timeout = timeout

    async def check(self) -> tuple[bool, str]:
        loop = asyncio.get_running_loop()
        reply: asyncio.Future = loop.create_future()

        # The server answers from a new port, so the socket stays unconnected
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ReadRequestProtocol(
                build_read_request(self.filename), (self.host, self.port), reply
            ),
            local_addr=("0.0.0.0", 0),
        )
        try:
            try:
                data, addr = await asyncio.wait_for(reply, timeout=self.timeout)
            except asyncio.TimeoutError:
                return False, f"no TFTP reply for {self.filename} within {self.timeout:g}s"

            if len(data) < 4:
                return False, f"malformed TFTP reply ({len(data)} bytes)"

            opcode, value = struct.unpack("!HH", data[:4])
            if opcode == OPCODE_DATA:
                transport.sendto(build_error(0, "health probe complete"), addr)
                return True, f"received block {value} of {self.filename} ({len(data) - 4} bytes)"
            if opcode == OPCODE_ERROR:
                message = data[4:].rstrip(b"\x00").decode("ascii", errors="replace")
                return False, f"TFTP error {value} for {self.filename}: {message}"
            return False, f"unexpected TFTP opcode {opcode}"
        finally:
            transport.close()
