"""Mount stack for the image's root tree.

Mounts made while building nest inside each other: the root filesystem is
mounted first, the ESP below it, then the pseudo-filesystems a chroot needs.
MountStack records every successful mount in order and releases them in
exactly the reverse order.

Functions:
    - active_mountpoints(): Mount targets currently in the mount table
    - is_mounted(): Whether a path is a mount target
    - mounts_below(): Active mounts at or below a directory
    - root_mount_entry(): The root filesystem mount
    - chroot_mount_plan(): ESP and pseudo-filesystem mounts, in order

Example:
    >>> stack = MountStack()
    >>> stack.acquire(root_mount_entry("/dev/loop0p2", mountpoint, layout))
    >>> for entry in chroot_mount_plan(mountpoint, "/dev/loop0p1", mask_dir, layout):
    ...     stack.acquire(entry)
    >>> errors = stack.release()
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Optional

from vm_image_builder.domain.models import FilesystemLayout, MountEntry
from vm_image_builder.exceptions import MountError, UnmountFailedError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.commands import describe_failure, run_command


log = LoggerFactory.for_mount()

MOUNTS_FILE = Path("/proc/self/mounts")
UNMOUNT_RETRY_DELAYS = (0.5, 1.0)


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    for escaped, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(escaped, char)
    return value


def active_mountpoints() -> list[str]:
    """Mount targets in mount-table order."""
    try:
        with open(MOUNTS_FILE, "r", encoding="utf-8") as mounts_file:
            lines = mounts_file.readlines()
    except FileNotFoundError:
        return []
    targets = []
    for line in lines:
        parts = line.split()
        if len(parts) > 1:
            targets.append(_unescape_mount_field(parts[1]))
    return targets


def _normalize(path: os.PathLike | str) -> str:
    return os.path.realpath(os.fspath(path))


def is_mounted(path: os.PathLike | str) -> bool:
    target = _normalize(path)
    return target in active_mountpoints()


def mounts_below(path: os.PathLike | str) -> list[str]:
    """Active mounts at ``path`` or nested inside it."""
    base = _normalize(path)
    prefix = base.rstrip("/") + "/"
    return [
        target
        for target in active_mountpoints()
        if target == base or target.startswith(prefix)
    ]


class MountStack:
    """Ordered stack of acquired mounts.

    ``acquire`` appends only after the mount succeeded; ``release`` pops from
    the end and attempts every entry exactly once.
    """

    def __init__(self, retry_delays: tuple[float, ...] = UNMOUNT_RETRY_DELAYS):
        self._entries: list[MountEntry] = []
        self.retry_delays = retry_delays

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    @property
    def entries(self) -> tuple[MountEntry, ...]:
        return tuple(self._entries)

    def acquire(self, entry: MountEntry) -> MountEntry:
        """Mount ``entry`` and push it on the stack.

        Raises:
            MountError: If the target cannot be created or mount fails
        """
        target = Path(entry.target)
        if entry.mkdir_mode is not None and not target.is_dir():
            try:
                target.mkdir(mode=entry.mkdir_mode, parents=True)
            except OSError as error:
                raise MountError(
                    f"Cannot create mountpoint {target}: {error}", target=str(target)
                ) from error
        if not target.is_dir():
            raise MountError(f"Mountpoint {target} does not exist", target=str(target))

        try:
            run_command(entry.mount_command())
        except (subprocess.CalledProcessError, OSError) as error:
            raise MountError(
                f"Failed to mount {entry.describe()}: {describe_failure(error)}",
                target=str(target),
            ) from error

        entry.acquired = True
        self._entries.append(entry)
        log.debug(f"Mounted {entry.describe()}")
        return entry

    def _unmount(self, entry: MountEntry) -> Optional[MountError]:
        target = str(entry.target)
        if not is_mounted(target):
            log.debug(f"{target} already unmounted")
            entry.acquired = False
            return None

        attempts = len(self.retry_delays) + 1
        reason = ""
        for attempt in range(1, attempts + 1):
            try:
                run_command(["umount", target])
                entry.acquired = False
                log.debug(f"Unmounted {target}")
                return None
            except (subprocess.CalledProcessError, OSError) as error:
                reason = describe_failure(error)
                if not is_mounted(target):
                    entry.acquired = False
                    return None
                log.warning(
                    f"Unmount of {target} failed (attempt {attempt}/{attempts}): {reason}"
                )
            if attempt < attempts:
                run_command(["sync"], check=False, log_command=False)
                time.sleep(self.retry_delays[attempt - 1])
        return UnmountFailedError(target, reason)

    def release(self) -> list[MountError]:
        """Unmount every entry, last acquired first.

        Failures are collected, not raised, so every entry is attempted once.
        Releasing an empty stack returns an empty list.
        """
        errors: list[MountError] = []
        while self._entries:
            entry = self._entries.pop()
            error = self._unmount(entry)
            if error is not None:
                log.error(str(error))
                errors.append(error)
        return errors

    def release_top(self, entry: MountEntry) -> None:
        """Release only ``entry``, which must be the most recent mount.

        Raises:
            MountError: If ``entry`` is not on top or cannot be unmounted
        """
        if not self._entries or self._entries[-1] is not entry:
            raise MountError(
                f"{entry.target} is not the most recent mount", target=str(entry.target)
            )
        error = self._unmount(entry)
        if error is not None:
            # still mounted, so it stays on the stack for the final release
            raise error
        self._entries.pop()


def root_mount_entry(
    device: str, mountpoint: Path, layout: FilesystemLayout
) -> MountEntry:
    return MountEntry(
        target=Path(mountpoint),
        source=device,
        options=tuple(layout.root_flags.split(",")),
    )


def chroot_mount_plan(
    root: Path, esp_device: str, mask_dir: Path, layout: FilesystemLayout
) -> list[MountEntry]:
    """Mounts needed below ``root`` before running tools inside it.

    The masked directory is bound over ``sys/firmware`` so package hooks do
    not see the build host's EFI variables and try to install a boot loader
    for the host instead of the image.
    """
    root = Path(root)
    return [
        MountEntry(root / layout.esp_dir, esp_device, mkdir_mode=0o700),
        MountEntry(root / "proc", "proc", "proc", ("nosuid", "noexec", "nodev")),
        MountEntry(root / "sys", "sys", "sysfs", ("nosuid", "noexec", "nodev", "ro")),
        MountEntry(root / "sys" / "firmware", str(mask_dir), bind=True),
        MountEntry(root / "dev", "udev", "devtmpfs", ("mode=0755", "nosuid")),
        MountEntry(
            root / "dev" / "pts", "devpts", "devpts",
            ("mode=0620", "gid=5", "nosuid", "noexec"),
        ),
        MountEntry(root / "dev" / "shm", "shm", "tmpfs", ("mode=1777", "nosuid", "nodev")),
        MountEntry(root / "run", "run", "tmpfs", ("nosuid", "nodev", "mode=0755")),
        MountEntry(
            root / "tmp", "tmp", "tmpfs",
            ("mode=1777", "strictatime", "nodev", "nosuid"),
        ),
    ]
