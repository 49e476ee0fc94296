"""
Configuration management for the PXE server supervisor.

Loads configuration from environment variables with validation. Every
option has a documented default; the effective value of each option and
whether it came from the environment are logged once at startup.
"""

import ipaddress
import socket
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Optional

import psutil
import structlog
from decouple import Csv, UndefinedValueError, config

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """PXE server supervisor configuration."""

    # DHCP (address assignment)
    dhcp_subnet: str = "192.168.1.0"
    dhcp_netmask: str = "255.255.255.0"
    dhcp_range_start: str = "192.168.1.100"
    dhcp_range_end: str = "192.168.1.200"
    dhcp_router: str = "192.168.1.1"
    dhcp_dns_servers: tuple[str, ...] = ("8.8.8.8",)
    dhcp_domain: str = "pxe.local"
    dhcp_lease_time: int = 86400
    dhcp_interface: Optional[str] = None

    # HTTP image serving
    http_port: int = 8080
    server_ip: Optional[str] = None

    # Boot menu
    pxe_timeout: int = 300  # tenths of a second
    pxe_default: str = "local"

    # TFTP boot file transfer
    tftp_enabled: bool = True
    tftp_port: int = 69

    # Filesystem layout
    http_root: Path = Path("/var/www/html")
    tftp_root: Optional[Path] = None  # defaults to http_root
    images_root: Optional[Path] = None  # defaults to http_root/images
    boot_files_dir: Path = Path("/tmp/pxe-boot-files")
    template_dir: Path = Path("/etc/pxe")
    dhcp_config_path: Path = Path("/etc/dhcp/dhcpd.conf")
    dhcp_leases_path: Path = Path("/var/lib/dhcpd/dhcpd.leases")
    nginx_config_path: Path = Path("/etc/nginx/nginx.conf")
    run_dir: Path = Path("/run/pxe")
    pxe_user: Optional[str] = None  # owner of the serving and runtime dirs

    # Daemon binaries
    dhcpd_bin: str = "dhcpd"
    tftpd_bin: str = "in.tftpd"
    nginx_bin: str = "nginx"

    # Supervision
    health_check_interval: float = 60.0  # seconds
    health_check_timeout: float = 10.0
    daemon_start_timeout: float = 3.0
    daemon_stop_timeout: float = 10.0
    disk_usage_threshold: float = 90.0  # percent
    network_check_host: str = "8.8.8.8"
    network_check_port: int = 53
    startup_health_required: bool = True
    restart_after_failures: int = 0  # 0 disables automatic restarts

    # Health endpoint
    health_endpoint_enabled: bool = True
    health_bind: str = "0.0.0.0"
    health_port: int = 8081

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json, console

    # Names of environment options that fell back to their defaults
    defaults_applied: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        field_defaults = {f.name: f.default for f in fields(cls)}
        defaulted: list[str] = []
        values: dict[str, Any] = {}

        for env_name, field_name, cast in _OPTIONS:
            try:
                if cast is None:
                    values[field_name] = config(env_name)
                else:
                    values[field_name] = config(env_name, cast=cast)
            except UndefinedValueError:
                values[field_name] = field_defaults[field_name]
                defaulted.append(env_name)

        if values["log_format"] not in ("json", "console"):
            raise ValueError(
                f"Invalid LOG_FORMAT: {values['log_format']}. Must be json or console."
            )

        if values["tftp_root"] is None:
            values["tftp_root"] = values["http_root"]
        if values["images_root"] is None:
            values["images_root"] = values["http_root"] / "images"

        instance = cls(defaults_applied=tuple(defaulted), **values)
        instance.validate()
        return instance

    def validate(self) -> None:
        """Check addresses, ranges, and ports for consistency."""
        try:
            network = ipaddress.IPv4Network(
                f"{self.dhcp_subnet}/{self.dhcp_netmask}", strict=True
            )
        except ValueError as e:
            raise ValueError(f"Invalid DHCP_SUBNET/DHCP_NETMASK: {e}") from e

        addresses = {}
        for env_name, value in (
            ("DHCP_RANGE_START", self.dhcp_range_start),
            ("DHCP_RANGE_END", self.dhcp_range_end),
            ("DHCP_ROUTER", self.dhcp_router),
        ):
            try:
                address = ipaddress.IPv4Address(value)
            except ValueError as e:
                raise ValueError(f"Invalid {env_name}: {value}") from e
            if address not in network:
                raise ValueError(f"{env_name} {value} is outside subnet {network}")
            addresses[env_name] = address

        if addresses["DHCP_RANGE_START"] > addresses["DHCP_RANGE_END"]:
            raise ValueError(
                f"DHCP_RANGE_START {self.dhcp_range_start} is after "
                f"DHCP_RANGE_END {self.dhcp_range_end}"
            )

        for dns in self.dhcp_dns_servers:
            try:
                ipaddress.IPv4Address(dns)
            except ValueError as e:
                raise ValueError(f"Invalid DHCP_DNS entry: {dns}") from e

        if self.server_ip:
            try:
                ipaddress.ip_address(self.server_ip)
            except ValueError as e:
                raise ValueError(f"Invalid HTTP_SERVER_IP: {self.server_ip}") from e

        for env_name, port in (
            ("NGINX_PORT", self.http_port),
            ("TFTP_PORT", self.tftp_port),
            ("HEALTH_PORT", self.health_port),
            ("NETWORK_CHECK_PORT", self.network_check_port),
        ):
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid {env_name}: {port}. Must be 1-65535.")

        if self.dhcp_lease_time <= 0:
            raise ValueError(f"Invalid DHCP_LEASE_TIME: {self.dhcp_lease_time}")

    @property
    def dhcp_max_lease_time(self) -> int:
        return self.dhcp_lease_time * 2

    @property
    def boot_tftp_root(self) -> Path:
        return self.tftp_root or self.http_root

    @property
    def boot_images_root(self) -> Path:
        return self.images_root or self.http_root / "images"

    def get_boot_url(self) -> str:
        """Get the HTTP base URL embedded in the boot menu."""
        host = self.server_ip or "127.0.0.1"
        return f"http://{host}:{self.http_port}"

    def pid_file(self, service: str) -> Path:
        return self.run_dir / f"{service}.pid"

    def with_detected_address(self) -> "ServerConfig":
        """Return a copy with server_ip filled in, detecting it if unset."""
        if self.server_ip:
            return self

        detected = detect_server_ip(
            interface=self.dhcp_interface,
            probe_host=self.network_check_host,
        )
        logger.info("server_ip_detected", server_ip=detected)
        return replace(self, server_ip=detected)

    def log_effective(self) -> None:
        """Log every effective option value and where it came from."""
        for env_name, field_name, _ in _OPTIONS:
            value = getattr(self, field_name)
            if isinstance(value, tuple):
                value = ",".join(value)
            elif isinstance(value, Path):
                value = str(value)
            logger.info(
                "config_option",
                option=env_name,
                value=value,
                source="default" if env_name in self.defaults_applied else "env",
            )


def _optional_str(value: str) -> Optional[str]:
    return value or None


def _optional_path(value: str) -> Optional[Path]:
    return Path(value) if value else None


# (environment variable, field name, decouple cast)
_OPTIONS: tuple[tuple[str, str, Optional[Callable]], ...] = (
    ("DHCP_SUBNET", "dhcp_subnet", None),
    ("DHCP_NETMASK", "dhcp_netmask", None),
    ("DHCP_RANGE_START", "dhcp_range_start", None),
    ("DHCP_RANGE_END", "dhcp_range_end", None),
    ("DHCP_ROUTER", "dhcp_router", None),
    ("DHCP_DNS", "dhcp_dns_servers", Csv(post_process=tuple)),
    ("DHCP_DOMAIN", "dhcp_domain", None),
    ("DHCP_LEASE_TIME", "dhcp_lease_time", int),
    ("DHCP_INTERFACE", "dhcp_interface", _optional_str),
    ("NGINX_PORT", "http_port", int),
    ("HTTP_SERVER_IP", "server_ip", _optional_str),
    ("PXE_TIMEOUT", "pxe_timeout", int),
    ("PXE_DEFAULT", "pxe_default", None),
    ("TFTP_ENABLED", "tftp_enabled", bool),
    ("TFTP_PORT", "tftp_port", int),
    ("HTTP_ROOT", "http_root", Path),
    ("TFTP_ROOT", "tftp_root", _optional_path),
    ("IMAGES_ROOT", "images_root", _optional_path),
    ("PXE_BOOT_FILES_DIR", "boot_files_dir", Path),
    ("PXE_TEMPLATE_DIR", "template_dir", Path),
    ("DHCP_CONFIG_PATH", "dhcp_config_path", Path),
    ("DHCP_LEASES_PATH", "dhcp_leases_path", Path),
    ("NGINX_CONFIG_PATH", "nginx_config_path", Path),
    ("RUN_DIR", "run_dir", Path),
    ("PXE_USER", "pxe_user", _optional_str),
    ("DHCPD_BIN", "dhcpd_bin", None),
    ("TFTPD_BIN", "tftpd_bin", None),
    ("NGINX_BIN", "nginx_bin", None),
    ("HEALTH_CHECK_INTERVAL", "health_check_interval", float),
    ("HEALTH_CHECK_TIMEOUT", "health_check_timeout", float),
    ("DAEMON_START_TIMEOUT", "daemon_start_timeout", float),
    ("DAEMON_STOP_TIMEOUT", "daemon_stop_timeout", float),
    ("DISK_USAGE_THRESHOLD", "disk_usage_threshold", float),
    ("NETWORK_CHECK_HOST", "network_check_host", None),
    ("NETWORK_CHECK_PORT", "network_check_port", int),
    ("STARTUP_HEALTH_REQUIRED", "startup_health_required", bool),
    ("RESTART_AFTER_FAILURES", "restart_after_failures", int),
    ("HEALTH_ENDPOINT_ENABLED", "health_endpoint_enabled", bool),
    ("HEALTH_BIND", "health_bind", None),
    ("HEALTH_PORT", "health_port", int),
    ("LOG_LEVEL", "log_level", None),
    ("LOG_FORMAT", "log_format", str.lower),
)


def detect_server_ip(interface: Optional[str] = None, probe_host: str = "8.8.8.8") -> str:
    """
    Detect this host's address for URLs embedded in the boot menu.

    Tries the configured interface first, then the source address the
    kernel would route toward probe_host, then the hostname lookup.
    """
    if interface:
        try:
            for addr in psutil.net_if_addrs().get(interface, []):
                if addr.family == socket.AF_INET:
                    return addr.address
            logger.warning("interface_has_no_ipv4", interface=interface)
        except OSError as e:
            logger.warning("interface_lookup_failed", interface=interface, error=str(e))

    # connect() on a UDP socket sends nothing; it only selects a route
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((probe_host, 80))
            address = sock.getsockname()[0]
            if address and not address.startswith("0."):
                return address
    except OSError:
        pass

    try:
        address = socket.gethostbyname(socket.gethostname())
        if address:
            return address
    except OSError:
        pass

    # Fallback to localhost (not ideal for production)
    logger.warning("server_ip_detection_failed", fallback="127.0.0.1")
    return "127.0.0.1"
