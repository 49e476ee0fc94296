"""Unit tests for ServerConfig.

Tests:
- Defaults applied when the environment is empty
- Environment overrides and list parsing
- Address and range validation
- Effective option logging with value sources
- Server address detection
"""

import socket
from pathlib import Path
from types import SimpleNamespace

import pytest
from structlog.testing import capture_logs

from pxeserver import config as config_module
from pxeserver.config import ServerConfig, _OPTIONS, detect_server_ip


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every supervisor option from the environment."""
    for env_name, _, _ in _OPTIONS:
        monkeypatch.delenv(env_name, raising=False)
    return monkeypatch


class TestFromEnv:
    """Tests for loading configuration from the environment."""

    def test_defaults_when_unset(self, clean_env):
        """Test that every unset option falls back to its default."""
        config = ServerConfig.from_env()

        assert config.dhcp_subnet == "192.168.1.0"
        assert config.dhcp_range_start == "192.168.1.100"
        assert config.http_port == 8080
        assert config.tftp_enabled is True
        assert config.dhcp_dns_servers == ("8.8.8.8",)
        assert config.tftp_root == Path("/var/www/html")
        assert config.images_root == Path("/var/www/html/images")
        assert set(config.defaults_applied) == {name for name, _, _ in _OPTIONS}

    def test_environment_overrides(self, clean_env):
        """Test that environment values replace defaults and are recorded as set."""
        clean_env.setenv("DHCP_SUBNET", "10.0.0.0")
        clean_env.setenv("DHCP_RANGE_START", "10.0.0.50")
        clean_env.setenv("DHCP_RANGE_END", "10.0.0.100")
        clean_env.setenv("DHCP_ROUTER", "10.0.0.1")
        clean_env.setenv("DHCP_DNS", "1.1.1.1, 9.9.9.9")
        clean_env.setenv("NGINX_PORT", "9090")
        clean_env.setenv("TFTP_ENABLED", "false")
        clean_env.setenv("HTTP_ROOT", "/srv/pxe")

        config = ServerConfig.from_env()

        assert config.dhcp_subnet == "10.0.0.0"
        assert config.dhcp_dns_servers == ("1.1.1.1", "9.9.9.9")
        assert config.http_port == 9090
        assert config.tftp_enabled is False
        assert config.tftp_root == Path("/srv/pxe")
        assert config.images_root == Path("/srv/pxe/images")
        assert "DHCP_SUBNET" not in config.defaults_applied
        assert "NGINX_PORT" not in config.defaults_applied
        assert "DHCP_NETMASK" in config.defaults_applied

    def test_invalid_log_format(self, clean_env):
        """Test that an unknown LOG_FORMAT is rejected."""
        clean_env.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            ServerConfig.from_env()

    def test_range_outside_subnet_rejected(self, clean_env):
        """Test that a DHCP range outside the subnet is rejected at load time."""
        clean_env.setenv("DHCP_RANGE_START", "10.0.0.50")

        with pytest.raises(ValueError, match="outside subnet"):
            ServerConfig.from_env()


class TestValidate:
    """Tests for configuration consistency checks."""

    def test_defaults_are_valid(self):
        """Test that the built-in defaults pass validation."""
        ServerConfig().validate()

    def test_range_start_after_end(self):
        """Test that an inverted range is rejected."""
        config = ServerConfig(dhcp_range_start="192.168.1.200", dhcp_range_end="192.168.1.100")

        with pytest.raises(ValueError, match="after"):
            config.validate()

    def test_router_outside_subnet(self):
        """Test that a router outside the subnet is rejected."""
        with pytest.raises(ValueError, match="DHCP_ROUTER"):
            ServerConfig(dhcp_router="10.1.1.1").validate()

    def test_subnet_with_host_bits(self):
        """Test that a subnet address with host bits set is rejected."""
        with pytest.raises(ValueError, match="DHCP_SUBNET"):
            ServerConfig(dhcp_subnet="192.168.1.7").validate()

    def test_invalid_dns_entry(self):
        """Test that a malformed DNS server is rejected."""
        with pytest.raises(ValueError, match="DHCP_DNS"):
            ServerConfig(dhcp_dns_servers=("8.8.8.8", "dns.example")).validate()

    def test_port_out_of_range(self):
        """Test that ports must be 1-65535."""
        with pytest.raises(ValueError, match="NGINX_PORT"):
            ServerConfig(http_port=70000).validate()


class TestDerivedValues:
    """Tests for values computed from the configuration."""

    def test_boot_url(self):
        """Test the boot URL uses the server address and HTTP port."""
        config = ServerConfig(server_ip="10.0.0.5", http_port=9090)
        assert config.get_boot_url() == "http://10.0.0.5:9090"

    def test_max_lease_time(self):
        """Test the maximum lease is twice the default lease."""
        assert ServerConfig(dhcp_lease_time=3600).dhcp_max_lease_time == 7200

    def test_explicit_server_ip_kept(self):
        """Test that a configured address is never replaced by detection."""
        config = ServerConfig(server_ip="10.0.0.5")
        assert config.with_detected_address() is config


class TestLogEffective:
    """Tests for effective configuration logging."""

    def test_each_option_logged_with_source(self, clean_env):
        """Test that every option is logged once with its source."""
        clean_env.setenv("NGINX_PORT", "9090")
        config = ServerConfig.from_env()

        with capture_logs() as logs:
            config.log_effective()

        options = {entry["option"]: entry for entry in logs if entry["event"] == "config_option"}
        assert len(options) == len(_OPTIONS)
        assert options["NGINX_PORT"]["value"] == 9090
        assert options["NGINX_PORT"]["source"] == "env"
        assert options["DHCP_SUBNET"]["source"] == "default"
        assert options["DHCP_DNS"]["value"] == "8.8.8.8"


class TestDetectServerIP:
    """Tests for server address detection."""

    def test_interface_address_preferred(self, monkeypatch):
        """Test that the configured interface's IPv4 address wins."""
        addrs = {
            "eth1": [
                SimpleNamespace(family=socket.AF_INET6, address="fe80::1"),
                SimpleNamespace(family=socket.AF_INET, address="10.20.0.4"),
            ]
        }
        monkeypatch.setattr(config_module.psutil, "net_if_addrs", lambda: addrs)

        assert detect_server_ip(interface="eth1") == "10.20.0.4"

    def test_fallback_to_loopback(self, monkeypatch):
        """Test that detection falls back to localhost when nothing resolves."""

        def unavailable(*args, **kwargs):
            raise OSError("network unreachable")

        monkeypatch.setattr(config_module.socket, "socket", unavailable)
        monkeypatch.setattr(config_module.socket, "gethostbyname", unavailable)

        with capture_logs() as logs:
            assert detect_server_ip() == "127.0.0.1"
        assert any(entry["event"] == "server_ip_detection_failed" for entry in logs)
