"""
Configuration rendering for the managed daemons.

Expands templates with the effective configuration, validates each result
with the target daemon's own syntax check, and only then commits it to
its live path. Also prepares the serving directories and stages boot
loader files into them.
"""

import filecmp
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Callable, Mapping, Optional, Sequence

import structlog

from pxeserver import templates
from pxeserver.config import ServerConfig
from pxeserver.exceptions import ConfigRenderError
from pxeserver.services.process import run_command

logger = structlog.get_logger()

# Relative to the serving root; the image health probe depends on these
REQUIRED_BOOT_FILES = ("pxelinux.0", "menu.c32", "pxelinux.cfg/default")

BOOT_MENU_PATH = "pxelinux.cfg/default"


@dataclass(frozen=True, slots=True)
class RenderedConfig:
    """Template output for one daemon, not yet committed."""

    name: str
    destination: Path
    content: str
    # argv template; "{path}" is replaced with the candidate file
    validate_command: tuple[str, ...] = ()
    validator: Optional[Callable[[str], None]] = None

    def validation_argv(self, path: Path) -> list[str]:
        return [arg.replace("{path}", str(path)) for arg in self.validate_command]


def default_syntax_checks(config: ServerConfig) -> dict[str, tuple[str, ...]]:
    """Syntax check commands, keyed by template name."""
    return {
        "dhcpd.conf": (config.dhcpd_bin, "-t", "-cf", "{path}"),
        "nginx.conf": (config.nginx_bin, "-t", "-c", "{path}"),
    }


def validate_boot_menu(content: str) -> None:
    """
    Check a pxelinux menu for structural errors.

    Raises ValueError on a missing DEFAULT, a non-numeric TIMEOUT, or a
    LABEL with nothing to boot.
    """
    lines = [line.strip() for line in content.splitlines()]
    directives = [line for line in lines if line and not line.startswith("#")]

    if not any(line.upper().startswith("DEFAULT ") for line in directives):
        raise ValueError("boot menu has no DEFAULT directive")

    labels: dict[str, bool] = {}
    current = None
    ontimeout = None
    for line in directives:
        keyword, _, value = line.partition(" ")
        keyword = keyword.upper()
        value = value.strip()
        if keyword == "LABEL":
            if not value:
                raise ValueError("LABEL without a name")
            current = value
            labels[current] = False
        elif keyword == "TIMEOUT":
            if not value.isdigit():
                raise ValueError(f"TIMEOUT must be an integer, got {value!r}")
        elif keyword == "ONTIMEOUT":
            ontimeout = value
        elif keyword in ("KERNEL", "LINUX", "LOCALBOOT", "COM32") and current:
            labels[current] = True

    empty = [name for name, bootable in labels.items() if not bootable]
    if empty:
        raise ValueError(f"LABEL with no KERNEL or LOCALBOOT: {', '.join(empty)}")

    if ontimeout and ontimeout not in labels:
        # Images may not be downloaded yet; the menu still works
        logger.warning("boot_menu_default_label_missing", label=ontimeout)


class ConfigRenderer:
    """Renders, validates, and commits daemon configuration files."""

    def __init__(
        self,
        config: ServerConfig,
        syntax_checks: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self.config = config
        checks = default_syntax_checks(config) if syntax_checks is None else syntax_checks
        self.syntax_checks = {name: tuple(argv) for name, argv in checks.items()}
        self.command_timeout = config.health_check_timeout

    def template_values(self) -> dict[str, str]:
        """Substitution values for all templates."""
        config = self.config
        return {
            "DHCP_SUBNET": config.dhcp_subnet,
            "DHCP_NETMASK": config.dhcp_netmask,
            "DHCP_RANGE_START": config.dhcp_range_start,
            "DHCP_RANGE_END": config.dhcp_range_end,
            "DHCP_ROUTER": config.dhcp_router,
            "DHCP_DNS": ", ".join(config.dhcp_dns_servers),
            "DHCP_DOMAIN": config.dhcp_domain,
            "DHCP_LEASE_TIME": str(config.dhcp_lease_time),
            "DHCP_MAX_LEASE_TIME": str(config.dhcp_max_lease_time),
            "NGINX_PORT": str(config.http_port),
            "NGINX_PID_FILE": str(config.pid_file("nginx")),
            "HTTP_SERVER_IP": config.server_ip or "127.0.0.1",
            "HTTP_ROOT": str(config.http_root),
            "TFTP_ROOT": str(config.boot_tftp_root),
            "RUN_DIR": str(config.run_dir),
            "PXE_TIMEOUT": str(config.pxe_timeout),
            "PXE_DEFAULT": config.pxe_default,
            "BOOT_URL": config.get_boot_url(),
        }

    def load_template(self, name: str) -> str:
        override = self.config.template_dir / name
        if override.is_file():
            logger.debug("template_override", template=name, path=str(override))
            return override.read_text(encoding="utf-8")
        return templates.BUILTIN[name]

    def distributions(self) -> list[str]:
        """Distribution tags under the images root with a kernel and initrd."""
        images_root = self.config.boot_images_root
        if not images_root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in images_root.iterdir()
            if entry.is_dir()
            and (entry / "vmlinuz").is_file()
            and (entry / "initrd.img").is_file()
        )

    def menu_entries(self, values: Mapping[str, str]) -> str:
        entry = Template(templates.MENU_ENTRY)
        return "".join(
            entry.safe_substitute(values, TAG=tag) for tag in self.distributions()
        )

    def render_all(self) -> list[RenderedConfig]:
        """Render every configuration file in memory."""
        values = self.template_values()
        values["MENU_ENTRIES"] = self.menu_entries(values)

        def render(name: str) -> str:
            return Template(self.load_template(name)).safe_substitute(values)

        rendered = [
            RenderedConfig(
                name="dhcpd.conf",
                destination=self.config.dhcp_config_path,
                content=render("dhcpd.conf"),
                validate_command=self.syntax_checks.get("dhcpd.conf", ()),
            ),
            RenderedConfig(
                name="nginx.conf",
                destination=self.config.nginx_config_path,
                content=render("nginx.conf"),
                validate_command=self.syntax_checks.get("nginx.conf", ()),
            ),
        ]

        menu = render(BOOT_MENU_PATH)
        menu_roots = [self.config.http_root]
        if self.config.tftp_enabled and self.config.boot_tftp_root != self.config.http_root:
            menu_roots.append(self.config.boot_tftp_root)
        for root in menu_roots:
            rendered.append(
                RenderedConfig(
                    name=BOOT_MENU_PATH,
                    destination=root / BOOT_MENU_PATH,
                    content=menu,
                    validate_command=self.syntax_checks.get(BOOT_MENU_PATH, ()),
                    validator=validate_boot_menu,
                )
            )

        for item in rendered:
            logger.debug("config_rendered", config=item.name, destination=str(item.destination))
        return rendered

    def _write_candidate(self, item: RenderedConfig) -> Path:
        item.destination.parent.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(
            dir=item.destination.parent,
            prefix=f".{item.destination.name}.",
            suffix=".tmp",
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(item.content)
        os.chmod(name, 0o644)
        return Path(name)

    async def validate(self, item: RenderedConfig, candidate: Path) -> None:
        """Validate a candidate file. Raises ConfigRenderError on failure."""
        if item.validator:
            try:
                item.validator(item.content)
            except ValueError as e:
                logger.error("config_validation_failed", config=item.name, error=str(e))
                raise ConfigRenderError(item.name, str(e)) from e

        if not item.validate_command:
            return

        result = await run_command(item.validation_argv(candidate), self.command_timeout)
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exit code {result.returncode}"
            logger.error(
                "config_validation_failed",
                config=item.name,
                reason=reason,
                output=result.output,
            )
            raise ConfigRenderError(item.name, f"syntax check failed ({reason})", result.output)

        logger.info("config_validated", config=item.name)

    def _commit(self, item: RenderedConfig, candidate: Path) -> bool:
        destination = item.destination
        if destination.is_file() and destination.read_bytes() == item.content.encode("utf-8"):
            logger.info("config_unchanged", config=item.name, path=str(destination))
            return False
        os.replace(candidate, destination)
        logger.info("config_written", config=item.name, path=str(destination))
        return True

    async def write(self, rendered: Sequence[RenderedConfig]) -> list[Path]:
        """
        Validate every rendered file, then commit them all.

        Nothing is committed unless every file validates; on failure the
        live files are left untouched.

        Returns:
            Destinations whose content changed.
        """
        candidates: list[tuple[RenderedConfig, Path]] = []
        try:
            for item in rendered:
                candidate = self._write_candidate(item)
                candidates.append((item, candidate))
                await self.validate(item, candidate)

            return [
                item.destination
                for item, candidate in candidates
                if self._commit(item, candidate)
            ]
        finally:
            for _, candidate in candidates:
                candidate.unlink(missing_ok=True)

    def prepare_directories(self) -> None:
        """
        Create the serving, runtime, and lease directories.

        When PXE_USER is set, the directories the daemons write to or serve
        from are handed to that user and its group of the same name.

        Raises:
            OSError: if a directory cannot be created or chowned.
            LookupError: if PXE_USER names an unknown user or group.
        """
        config = self.config
        directories = (
            config.http_root,
            config.http_root / "pxelinux.cfg",
            config.boot_images_root,
            config.boot_tftp_root,
            config.run_dir,
            config.dhcp_leases_path.parent,
        )
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)
        config.dhcp_leases_path.touch(exist_ok=True)
        logger.debug("directories_prepared", http_root=str(config.http_root))

        if config.pxe_user:
            owned = dict.fromkeys(directories + (config.dhcp_leases_path,))
            for path in owned:
                shutil.chown(path, user=config.pxe_user, group=config.pxe_user)
            logger.info("directories_chowned", user=config.pxe_user, paths=len(owned))

    def stage_boot_files(self) -> list[Path]:
        """
        Copy boot loader files into the serving roots.

        Only missing or changed files are copied and the source is kept,
        so repeated runs converge on the same tree.
        """
        source = self.config.boot_files_dir
        if not source.is_dir():
            logger.debug("boot_files_source_missing", path=str(source))
            return []

        roots = [self.config.http_root]
        if self.config.tftp_enabled and self.config.boot_tftp_root not in roots:
            roots.append(self.config.boot_tftp_root)

        copied = []
        for src in sorted(p for p in source.rglob("*") if p.is_file()):
            relative = src.relative_to(source)
            for root in roots:
                dest = root / relative
                if dest.is_file() and filecmp.cmp(src, dest, shallow=False):
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
                os.close(fd)
                try:
                    shutil.copyfile(src, tmp)
                    os.chmod(tmp, 0o644)
                    os.replace(tmp, dest)
                finally:
                    Path(tmp).unlink(missing_ok=True)
                copied.append(dest)

        logger.info("boot_files_staged", source=str(source), copied=len(copied))
        return copied

    def missing_boot_files(self) -> list[Path]:
        return [
            self.config.http_root / name
            for name in REQUIRED_BOOT_FILES
            if not (self.config.http_root / name).is_file()
        ]

    async def run(self) -> list[RenderedConfig]:
        """Prepare directories, stage boot files, and render all configs."""
        try:
            self.prepare_directories()
            self.stage_boot_files()
        except (OSError, LookupError) as e:
            logger.error("boot_file_setup_failed", error=str(e))
            raise ConfigRenderError("boot-files", str(e)) from e

        rendered = self.render_all()
        try:
            changed = await self.write(rendered)
        except OSError as e:
            logger.error("config_write_failed", error=str(e))
            raise ConfigRenderError("write", str(e)) from e

        missing = self.missing_boot_files()
        if missing:
            logger.warning(
                "critical_boot_files_missing",
                files=[str(path) for path in missing],
                message="Some PXE boot functionality may not work correctly",
            )
        else:
            logger.info("critical_boot_files_present")

        logger.info("configs_rendered", total=len(rendered), changed=len(changed))
        return rendered
