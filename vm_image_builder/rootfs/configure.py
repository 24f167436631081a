"""First-boot configuration written into the mounted root tree.

The image must boot as a fresh machine: no machine-id, no random seed,
identity set by systemd-firstboot, networking via systemd-networkd with DHCP,
and the root partition grown to fill the disk on first boot by
systemd-repart.

There is no fstab: the root partition is found by its GPT type and the
kernel command line carries the mount flags, including the sub-volume.
See https://systemd.io/BUILDING_IMAGES/ and the discoverable partitions
specification.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Iterable

from vm_image_builder.domain.models import BuildConfig
from vm_image_builder.exceptions import ConfigInjectionError, MissingServiceUnitError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.commands import describe_failure, run_command


log = LoggerFactory.for_config()

RESOLV_STUB = "/run/systemd/resolve/stub-resolv.conf"
UNIT_DIRS = ("etc/systemd/system", "usr/lib/systemd/system", "lib/systemd/system")
UNIT_SUFFIXES = (".service", ".socket", ".timer", ".target", ".path", ".mount")

REPART_ROOT_CONF = """\
[Partition]
Type=root
"""

SSHD_HARDENING_CONF = """\
PermitRootLogin no
PasswordAuthentication no
"""


def network_unit(match: str) -> str:
    return (
        "[Match]\n"
        f"Name={match}\n"
        "Type=ether\n"
        "\n"
        "[Network]\n"
        "DHCP=yes\n"
    )


def cloud_init_config(shell: str) -> str:
    return (
        "system_info:\n"
        "  default_user:\n"
        f"    shell: {shell}\n"
        "    gecos:\n"
        "growpart:\n"
        "  mode: off\n"
        "resize_rootfs: false\n"
        "ssh_deletekeys: false\n"
        "ssh_genkeytypes: []\n"
        "disable_root: true\n"
        'disable_root_opts: "#"\n'
    )


def _inside(root: Path, path: str) -> Path:
    return Path(root) / path.lstrip("/")


class ConfigInjector:
    """Writes first-boot settings into a populated root tree."""

    def __init__(self, config: BuildConfig):
        self.config = config

    def _write(self, root: Path, relative: str, content: str, append: bool = False) -> Path:
        path = _inside(root, relative)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a" if append else "w", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as error:
            raise ConfigInjectionError(f"Cannot write {path}: {error}", path=str(path)) from error
        log.debug(f"{'Appended to' if append else 'Wrote'} /{relative.lstrip('/')}")
        return path

    def _remove(self, root: Path, relative: str) -> None:
        path = _inside(root, relative)
        try:
            if path.is_symlink() or path.exists():
                path.unlink()
                log.debug(f"Removed /{relative.lstrip('/')}")
        except OSError as error:
            raise ConfigInjectionError(f"Cannot remove {path}: {error}", path=str(path)) from error

    def _symlink(self, root: Path, relative: str, target: str) -> None:
        path = _inside(root, relative)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.is_symlink() or path.exists():
                path.unlink()
            os.symlink(target, path)
        except OSError as error:
            raise ConfigInjectionError(f"Cannot link {path}: {error}", path=str(path)) from error
        log.debug(f"Linked /{relative.lstrip('/')} -> {target}")

    def reset_machine_identity(self, root: Path) -> None:
        self._remove(root, "etc/machine-id")

    def prepare_kernel_install(self, root: Path) -> None:
        """Settings kernel install hooks read while packages are installed."""
        self.reset_machine_identity(root)
        self._write(root, "etc/kernel/cmdline", self.config.kernel_cmdline() + "\n")

    def inject(self, root: Path) -> None:
        """Write all first-boot configuration below ``root``."""
        root = Path(root)
        layout = self.config.layout

        log.info("Applying cloud image settings")
        self.reset_machine_identity(root)
        self._remove(root, "var/lib/systemd/random-seed")
        self._remove(root, f"{layout.esp_dir}/loader/random-seed")
        self._write(root, "etc/repart.d/root.conf", REPART_ROOT_CONF)
        self._write(
            root,
            "etc/cloud/cloud.cfg.d/custom.cfg",
            cloud_init_config(self.config.identity.shell),
        )

        log.info("Applying first-boot settings")
        self.apply_firstboot(root)

        log.info("Applying network settings")
        self._symlink(root, "etc/resolv.conf", RESOLV_STUB)
        self._write(
            root,
            "etc/systemd/network/99-ethernet.network",
            network_unit(self.config.network_match),
        )

        log.info("Applying login and shell settings")
        self._write(root, "etc/ssh/sshd_config.d/custom.conf", SSHD_HARDENING_CONF)
        if self.config.shell_rc_lines:
            self._write(
                root,
                self.config.shell_rc_path,
                "".join(f"{line}\n" for line in self.config.shell_rc_lines),
                append=True,
            )
        for link, target in self.config.editor_links:
            self._symlink(root, link, target)

    def apply_firstboot(self, root: Path) -> None:
        identity = self.config.identity
        command = [
            "systemd-firstboot",
            f"--root={root}",
            "--force",
            f"--keymap={identity.keymap}",
            f"--locale={identity.locale}",
            f"--hostname={identity.hostname}",
            f"--timezone={identity.timezone}",
            f"--root-shell={identity.shell}",
        ]
        try:
            run_command(command)
        except (subprocess.CalledProcessError, OSError) as error:
            raise ConfigInjectionError(
                f"systemd-firstboot failed: {describe_failure(error)}"
            ) from error

    def missing_units(self, root: Path, services: Iterable[str]) -> list[str]:
        missing = []
        for name in services:
            candidates = [name] if name.endswith(UNIT_SUFFIXES) else [
                name + suffix for suffix in UNIT_SUFFIXES
            ]
            found = any(
                (Path(root) / unit_dir / candidate).exists()
                or (Path(root) / unit_dir / candidate).is_symlink()
                for unit_dir in UNIT_DIRS
                for candidate in candidates
            )
            if not found:
                missing.append(name)
        return missing

    def enable_services(self, root: Path, services: Iterable[str]) -> None:
        """Enable ``services`` in the tree's systemd configuration.

        Raises:
            MissingServiceUnitError: If any unit is not installed in the tree
            ConfigInjectionError: If systemctl fails
        """
        names = sorted(set(services))
        if not names:
            return
        missing = self.missing_units(root, names)
        if missing:
            raise MissingServiceUnitError(missing)
        log.info(f"Enabling units: {' '.join(names)}")
        try:
            run_command(["systemctl", f"--root={root}", "enable", *names])
        except (subprocess.CalledProcessError, OSError) as error:
            raise ConfigInjectionError(
                f"Failed to enable units: {describe_failure(error)}"
            ) from error
