"""Typed description of the image to build.

These objects are pure data. They are built once from the build configuration
(see ``vm_image_builder.config.settings``) and passed by reference through the
pipeline; nothing mutates them after construction.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


# ==============================================================================
# Sizes
# ==============================================================================

SECTOR_SIZE = 512
MIB = 1024**2

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)


def parse_size(value: int | str) -> int:
    """Parse a size given in bytes or with a binary K/M/G/T suffix.

    ``"200M"`` and ``"200MiB"`` both mean 200 * 1024**2 bytes, matching
    truncate(1) and sfdisk(8).

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.upper()]


def human_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PiB"


# ==============================================================================
# Partition Table Domain
# ==============================================================================

# https://uapi-group.org/specifications/specs/discoverable_partitions_specification/
ESP_TYPE_GUID = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
ROOT_X86_64_TYPE_GUID = "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709"

# GPT attribute bit 59: grow the contained filesystem on first boot
AUTO_GROW_ATTRIBUTE = 59


@dataclass(frozen=True)
class PartitionSpec:
    """One entry of the GPT, in table order.

    ``size_bytes=None`` means the partition grows to fill the rest of the disk.
    """

    type_guid: str
    label: str
    size_bytes: Optional[int] = None
    attributes: tuple[int, ...] = ()

    @property
    def grows_to_fill(self) -> bool:
        return self.size_bytes is None

    @property
    def auto_grow(self) -> bool:
        return AUTO_GROW_ATTRIBUTE in self.attributes


@dataclass(frozen=True)
class ImageSpec:
    """The raw image file and what it is converted into."""

    size_bytes: int
    raw_path: Path
    export_path: Path
    export_format: str = "qcow2"
    partitions: tuple[PartitionSpec, ...] = ()


# ==============================================================================
# Filesystem Domain
# ==============================================================================


@dataclass(frozen=True)
class FilesystemLayout:
    """How the ESP and root partitions are formatted and mounted."""

    esp_label: str = "ESP"
    esp_dir: str = "efi"
    root_label: str = "Debian"
    root_subvolume: str = "@debian"
    root_options: str = "compress=zstd,noatime"

    @property
    def root_flags(self) -> str:
        """Mount options for the root filesystem, selecting the sub-volume.

        Returns: e.g., "compress=zstd,noatime,subvol=@debian"
        """
        options = [opt for opt in self.root_options.split(",") if opt]
        options.append(f"subvol={self.root_subvolume}")
        return ",".join(options)


# ==============================================================================
# First-boot Domain
# ==============================================================================


@dataclass(frozen=True)
class HostIdentity:
    """Settings handed to systemd-firstboot."""

    hostname: str = "debian"
    keymap: str = "us"
    locale: str = "C.UTF-8"
    timezone: str = "UTC"
    shell: str = "/usr/bin/zsh"


DEFAULT_CONSOLE_PARAMETERS = (
    "rw",
    "console=tty0",
    "console=ttyS0,115200",
    "earlyprintk=ttyS0,115200",
    "consoleblank=0",
)


@dataclass(frozen=True)
class BuildConfig:
    """Everything the pipeline needs to build one image."""

    image: ImageSpec
    layout: FilesystemLayout = field(default_factory=FilesystemLayout)
    identity: HostIdentity = field(default_factory=HostIdentity)
    release: str = "bookworm"
    mirror: str = "http://deb.debian.org/debian"
    arch: str = "amd64"
    packages: frozenset[str] = frozenset()
    services: frozenset[str] = frozenset()
    network_match: str = "en*"
    console_parameters: tuple[str, ...] = DEFAULT_CONSOLE_PARAMETERS
    shell_rc_path: str = "/etc/zsh/zshrc"
    shell_rc_lines: tuple[str, ...] = ()
    editor_links: tuple[tuple[str, str], ...] = ()

    @property
    def esp_partition(self) -> PartitionSpec:
        return self.image.partitions[0]

    @property
    def root_partition(self) -> PartitionSpec:
        return self.image.partitions[-1]

    def kernel_cmdline(self) -> str:
        """Kernel command line naming the root partition by GPT label."""
        parts = [
            f"root=PARTLABEL={self.layout.root_label}",
            f"rootflags={self.layout.root_flags}",
            *self.console_parameters,
        ]
        return " ".join(parts)


# ==============================================================================
# Runtime Resources
# ==============================================================================


@dataclass
class BlockDevice:
    """A loop device bound to an image's backing file.

    Owned by the BlockDeviceBinder; ``attached`` flips to False on unbind.
    """

    backing_file: Path
    loop_path: Optional[str] = None
    partitions: list[str] = field(default_factory=list)
    attached: bool = False

    @property
    def name(self) -> str:
        return self.loop_path or "(unbound)"

    def partition_path(self, number: int) -> str:
        """Node for the 1-based partition ``number`` (e.g., /dev/loop0p2)."""
        if not self.loop_path:
            raise ValueError("Block device is not bound")
        return f"{self.loop_path}p{number}"


@dataclass
class MountEntry:
    """One mount in the stack.

    ``source`` is a device node, a directory for bind mounts, or the name of a
    pseudo-filesystem instance (e.g., "proc").
    """

    target: Path
    source: str
    fstype: Optional[str] = None
    options: tuple[str, ...] = ()
    bind: bool = False
    mkdir_mode: Optional[int] = None
    acquired: bool = False

    def mount_command(self) -> list[str]:
        command = ["mount"]
        if self.bind:
            command.append("--bind")
        if self.fstype:
            command.extend(["-t", self.fstype])
        if self.options:
            command.extend(["-o", ",".join(self.options)])
        command.extend([self.source, str(self.target)])
        return command

    def describe(self) -> str:
        kind = "bind" if self.bind else (self.fstype or "auto")
        return f"{self.source} on {self.target} ({kind})"
