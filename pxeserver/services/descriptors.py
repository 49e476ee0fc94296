"""
Static descriptions of the managed daemons.

All daemons run in the foreground so the supervisor owns their processes
directly instead of tracking PID files.
"""

from dataclasses import dataclass
from typing import Optional

from pxeserver.config import ServerConfig
from pxeserver.health.probes import CommandProbe, HealthProbe, HTTPProbe
from pxeserver.health.tftp import TFTPReadProbe

DHCP_PORT = 67

# Address assignment first: the boot menu points clients at the image server
START_ORDER = ("dhcp", "tftp", "http")


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """One managed daemon."""

    name: str
    command: tuple[str, ...]
    validate_command: tuple[str, ...] = ()
    # Empty means SIGTERM
    stop_command: tuple[str, ...] = ()
    port: Optional[int] = None
    transport: str = "tcp"
    functional_probes: tuple[HealthProbe, ...] = ()


def build_descriptors(config: ServerConfig) -> list[ServiceDescriptor]:
    """Build descriptors for every enabled daemon, in start order."""
    timeout = config.health_check_timeout
    dhcp_conf = str(config.dhcp_config_path)
    nginx_conf = str(config.nginx_config_path)

    dhcp_command = [
        config.dhcpd_bin,
        "-f",
        "-cf", dhcp_conf,
        "-lf", str(config.dhcp_leases_path),
        "-pf", str(config.pid_file("dhcpd")),
    ]
    if config.dhcp_interface:
        dhcp_command.append(config.dhcp_interface)
    dhcp_check = (config.dhcpd_bin, "-t", "-cf", dhcp_conf)

    descriptors = {
        "dhcp": ServiceDescriptor(
            name="dhcp",
            command=tuple(dhcp_command),
            validate_command=dhcp_check,
            port=DHCP_PORT,
            transport="udp",
            functional_probes=(
                CommandProbe("dhcp_config", dhcp_check, service="dhcp", timeout=timeout),
            ),
        ),
    }

    if config.tftp_enabled:
        descriptors["tftp"] = ServiceDescriptor(
            name="tftp",
            command=(
                config.tftpd_bin,
                "--foreground",
                "--listen",
                "--address", f"0.0.0.0:{config.tftp_port}",
                "--secure", str(config.boot_tftp_root),
            ),
            port=config.tftp_port,
            transport="udp",
            functional_probes=(
                TFTPReadProbe("pxelinux.0", port=config.tftp_port, timeout=timeout),
            ),
        )

    nginx_check = (config.nginx_bin, "-t", "-c", nginx_conf)
    http_base = f"http://127.0.0.1:{config.http_port}"
    descriptors["http"] = ServiceDescriptor(
        name="http",
        command=(config.nginx_bin, "-c", nginx_conf, "-g", "daemon off;"),
        validate_command=nginx_check,
        stop_command=(config.nginx_bin, "-c", nginx_conf, "-s", "quit"),
        port=config.http_port,
        transport="tcp",
        functional_probes=(
            CommandProbe("http_config", nginx_check, service="http", timeout=timeout),
            HTTPProbe("http_health", f"{http_base}/health", service="http", timeout=timeout),
            # Boot files are staged content, not daemon state; no service owner
            HTTPProbe("pxe_files_http", f"{http_base}/pxelinux.0", timeout=timeout),
        ),
    )

    return [descriptors[name] for name in START_ORDER if name in descriptors]
