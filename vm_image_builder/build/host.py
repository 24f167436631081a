"""Build host checks run before anything is acquired."""

from __future__ import annotations

import os
import shutil
from typing import Iterable

from vm_image_builder.exceptions import PrerequisiteError
from vm_image_builder.logging import LoggerFactory


log = LoggerFactory.for_system()

# Tool -> Debian package providing it
REQUIRED_TOOLS = {
    "debootstrap": "debootstrap",
    "btrfs": "btrfs-progs",
    "mkfs.btrfs": "btrfs-progs",
    "mkfs.vfat": "dosfstools",
    "qemu-img": "qemu-utils",
    "sfdisk": "util-linux",
    "losetup": "util-linux",
    "mount": "util-linux",
    "umount": "util-linux",
    "fstrim": "util-linux",
    "chroot": "coreutils",
    "systemd-firstboot": "systemd",
    "systemctl": "systemd",
}


def missing_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> list[str]:
    return sorted(tool for tool in tools if shutil.which(tool) is None)


def check_host(require_root: bool = True) -> None:
    """
    Raises:
        PrerequisiteError: If not running as root or tools are missing
    """
    missing = missing_tools()
    if require_root and os.geteuid() != 0:
        raise PrerequisiteError(missing, "must run as root")
    if missing:
        packages = sorted({REQUIRED_TOOLS[tool] for tool in missing})
        raise PrerequisiteError(missing, f"install {' '.join(packages)}")
    log.debug("Build host prerequisites satisfied")
