"""
PXE Server Testing Framework - Global Test Configuration
Pytest fixtures shared by the unit tests
"""

import socket
import sys
from pathlib import Path
from typing import Callable

import pytest

from pxeserver.config import ServerConfig
from pxeserver.services.descriptors import ServiceDescriptor

PYTHON = sys.executable

# Stand-ins for daemon binaries
OK_CHECK = (PYTHON, "-c", "import sys; sys.exit(0)", "{path}")
FAILING_CHECK = (PYTHON, "-c", "import sys; print('syntax error on line 1'); sys.exit(1)", "{path}")
SLEEP_FOREVER = "import time; time.sleep(60)"


@pytest.fixture(scope="function")
def server_config(tmp_path: Path) -> ServerConfig:
    """Configuration rooted entirely in a temporary directory."""
    http_root = tmp_path / "www"
    return ServerConfig(
        http_root=http_root,
        tftp_root=http_root,
        images_root=http_root / "images",
        boot_files_dir=tmp_path / "pxe-boot-files",
        template_dir=tmp_path / "templates",
        dhcp_config_path=tmp_path / "etc" / "dhcp" / "dhcpd.conf",
        dhcp_leases_path=tmp_path / "lib" / "dhcpd" / "dhcpd.leases",
        nginx_config_path=tmp_path / "etc" / "nginx" / "nginx.conf",
        run_dir=tmp_path / "run",
        server_ip="10.0.0.5",
        health_check_interval=60.0,
        health_check_timeout=5.0,
        daemon_start_timeout=2.0,
        daemon_stop_timeout=2.0,
        network_check_host="127.0.0.1",
        network_check_port=free_tcp_port(),
        health_endpoint_enabled=False,
    )


@pytest.fixture(scope="function")
def passing_checks() -> dict:
    """Syntax checks that always succeed."""
    return {"dhcpd.conf": OK_CHECK, "nginx.conf": OK_CHECK}


@pytest.fixture(scope="function")
def boot_files(server_config: ServerConfig) -> Path:
    """Populate the boot file staging directory like the container image does."""
    source = server_config.boot_files_dir
    source.mkdir(parents=True)
    for name in ("pxelinux.0", "menu.c32", "ldlinux.c32"):
        (source / name).write_bytes(f"{name} contents".encode())
    return source


@pytest.fixture(scope="function")
def daemon() -> Callable[..., ServiceDescriptor]:
    """Factory for descriptors backed by a long-running Python process."""

    def factory(name: str, code: str = SLEEP_FOREVER, **kwargs) -> ServiceDescriptor:
        return ServiceDescriptor(name=name, command=(PYTHON, "-c", code), **kwargs)

    return factory


def free_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
