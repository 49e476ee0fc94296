"""Supervisor error types."""

from typing import Optional


class SupervisorError(Exception):
    """Base class for fatal supervisor errors."""


class ConfigRenderError(SupervisorError):
    """Rendered configuration failed validation and was not committed."""

    def __init__(self, config_name: str, message: str, output: Optional[str] = None):
        super().__init__(f"{config_name}: {message}")
        self.config_name = config_name
        self.output = output


class LaunchError(SupervisorError):
    """A daemon did not reach a running state."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service
