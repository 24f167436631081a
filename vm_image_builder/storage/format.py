"""Partition formatting for the image.

Filesystems:
    ESP:   FAT32 (mkfs.vfat -F 32), labelled
    root:  Btrfs (mkfs.btrfs), labelled, with a named sub-volume set as the
           default mount target

Sub-volume activation:
    A sub-volume can only be created on a mounted filesystem, and the root is
    later mounted with ``subvol=<name>``, which fails until the sub-volume
    exists. format_root() therefore mounts the fresh filesystem once, creates
    the sub-volume, marks it default and unmounts again. That temporary mount
    goes through the build's MountStack so an interruption in between still
    unmounts it.

Operations:
    - format_esp(): FAT32 with volume label
    - format_root(): Btrfs with label and default sub-volume
    - sync(): Flush a filesystem
    - trim(): Discard unused blocks so the exported image stays small
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Sequence

from vm_image_builder.domain.models import MountEntry
from vm_image_builder.exceptions import FilesystemError, MountError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.commands import describe_failure, run_command
from vm_image_builder.storage.mount import MountStack


log = LoggerFactory.for_filesystem()


def _run(command: Sequence[str], device: str, action: str) -> None:
    try:
        run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        raise FilesystemError(
            f"Failed to {action} {device}: {describe_failure(error)}", device=device
        ) from error


class FilesystemProvisioner:
    """Formats the ESP and root partitions."""

    def format_esp(self, device: str, label: str) -> None:
        log.info(f"Formatting {device} as FAT32 ({label})")
        _run(["mkfs.vfat", "-F", "32", "-n", label, device], device, "format")

    def format_root(
        self,
        device: str,
        label: str,
        subvolume: str,
        mount_stack: MountStack,
        scratch_dir: Path,
    ) -> None:
        """Format ``device`` as Btrfs and make ``subvolume`` its default."""
        log.info(f"Formatting {device} as Btrfs ({label})")
        _run(["mkfs.btrfs", "--force", "--label", label, device], device, "format")

        entry = MountEntry(target=Path(scratch_dir), source=device)
        try:
            mount_stack.acquire(entry)
        except MountError as error:
            raise FilesystemError(
                f"Cannot mount {device} to create sub-volume: {error}", device=device
            ) from error

        subvolume_path = Path(scratch_dir) / subvolume
        _run(
            ["btrfs", "subvolume", "create", str(subvolume_path)],
            device,
            f"create sub-volume {subvolume} on",
        )
        _run(
            ["btrfs", "subvolume", "set-default", str(subvolume_path)],
            device,
            f"set default sub-volume {subvolume} on",
        )

        try:
            mount_stack.release_top(entry)
        except MountError as error:
            raise FilesystemError(
                f"Cannot unmount {device} after creating sub-volume: {error}",
                device=device,
            ) from error
        log.debug(f"Sub-volume {subvolume} is the default on {device}")

    def sync(self, path: Path) -> None:
        _run(["sync", "-f", str(path)], str(path), "sync")

    def trim(self, path: Path) -> None:
        _run(["fstrim", "--verbose", str(path)], str(path), "trim")
