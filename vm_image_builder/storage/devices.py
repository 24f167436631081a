"""Backing file and loop device management.

The BlockDeviceBinder turns an ImageSpec into an addressable block device:

    1. validate the partition layout (nothing is created if it is invalid)
    2. create the sparse backing file
    3. write and verify the GPT
    4. attach the file with ``losetup --find --partscan --show``
    5. wait for the kernel to create the ``<loop>pN`` partition nodes

Ownership:
    The caller registers the device as soon as it is attached by passing
    ``on_attached``. From that moment the owner is responsible for calling
    ``unbind()``, even if the partition wait that follows fails. Without a
    callback, bind() detaches the device itself before raising.

Example:
    >>> binder = BlockDeviceBinder()
    >>> device = binder.bind(Path("image.img"), 2 * 1024**3, partitions)
    >>> device.partitions
    ['/dev/loop0p1', '/dev/loop0p2']
    >>> binder.unbind(device)
"""
from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from vm_image_builder.domain.models import BlockDevice, PartitionSpec, human_size
from vm_image_builder.exceptions import DeviceError, PartitionScanTimeoutError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage import partition_table
from vm_image_builder.storage.commands import describe_failure, run_command


log = LoggerFactory.for_device()

PARTITION_SCAN_ATTEMPTS = 20
PARTITION_SCAN_DELAY = 0.25


def create_sparse_file(path: Path, size_bytes: int) -> None:
    """Create (or replace) ``path`` as a sparse file of ``size_bytes``.

    Raises:
        DeviceError: If the size is not positive or the path is not writable
    """
    if size_bytes <= 0:
        raise DeviceError(f"Image size must be positive, got {size_bytes}", device=str(path))
    parent = path.parent if str(path.parent) else Path(".")
    if not parent.is_dir() or not os.access(parent, os.W_OK | os.X_OK):
        raise DeviceError(f"Directory {parent} is not writable", device=str(path))
    try:
        if path.exists() or path.is_symlink():
            log.debug(f"Removing existing image {path}")
            path.unlink()
        with open(path, "wb") as image:
            image.truncate(size_bytes)
    except OSError as error:
        raise DeviceError(f"Failed to create image {path}: {error}", device=str(path)) from error
    log.info(f"Created sparse image {path} ({human_size(size_bytes)})")


def attached_loop_devices(path: Path) -> list[str]:
    """Loop devices currently backed by ``path``."""
    try:
        result = run_command(
            ["losetup", "--associated", str(path), "--noheadings", "--output", "NAME"],
            check=False,
            log_output=False,
            log_command=False,
        )
    except OSError as error:
        log.debug(f"losetup unavailable: {error}")
        return []
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _settle() -> None:
    if shutil.which("udevadm"):
        try:
            run_command(["udevadm", "settle", "--timeout=5"], check=False, log_command=False)
        except OSError:
            pass


class BlockDeviceBinder:
    """Creates, attaches and detaches the image's loop device."""

    def __init__(
        self,
        scan_attempts: int = PARTITION_SCAN_ATTEMPTS,
        scan_delay: float = PARTITION_SCAN_DELAY,
    ):
        self.scan_attempts = scan_attempts
        self.scan_delay = scan_delay

    def bind(
        self,
        path: Path,
        size_bytes: int,
        partitions: Sequence[PartitionSpec],
        on_attached: Optional[Callable[[BlockDevice], None]] = None,
    ) -> BlockDevice:
        """Create ``path``, partition it and attach it to a loop device.

        Raises:
            ConfigError: If the layout does not fit (nothing is created)
            DeviceError: On any file, sfdisk or losetup failure
            PartitionScanTimeoutError: If partition nodes do not appear
        """
        path = Path(path)
        if size_bytes <= 0:
            raise DeviceError(f"Image size must be positive, got {size_bytes}", device=str(path))
        partition_table.validate_layout(size_bytes, partitions)

        create_sparse_file(path, size_bytes)
        partition_table.write_partition_table(path, partitions)
        records = partition_table.read_partition_table(path)
        partition_table.verify_partition_table(records, partitions)

        device = self.attach(path)
        if on_attached is not None:
            on_attached(device)
            self.wait_for_partitions(device, len(partitions))
            return device

        try:
            self.wait_for_partitions(device, len(partitions))
        except BaseException:
            self.unbind(device)
            raise
        return device

    def attach(self, path: Path) -> BlockDevice:
        try:
            result = run_command(
                ["losetup", "--find", "--partscan", "--show", str(path)]
            )
        except (subprocess.CalledProcessError, OSError) as error:
            raise DeviceError(
                f"Failed to attach {path} to a loop device: {describe_failure(error)}",
                device=str(path),
            ) from error
        loop_path = result.stdout.strip()
        if not loop_path.startswith("/dev/"):
            raise DeviceError(f"losetup returned unexpected device {loop_path!r}", device=str(path))
        log.info(f"Attached {path} to {loop_path}")
        return BlockDevice(backing_file=path, loop_path=loop_path, attached=True)

    def wait_for_partitions(self, device: BlockDevice, count: int) -> list[str]:
        """Wait for ``count`` partition nodes to exist.

        Bounded retry with a fixed delay; this waits out kernel/udev timing,
        it does not retry any operation.
        """
        expected = [device.partition_path(number) for number in range(1, count + 1)]
        for attempt in range(1, self.scan_attempts + 1):
            missing = [node for node in expected if not os.path.exists(node)]
            if not missing:
                device.partitions = expected
                log.debug(f"Partition nodes ready after {attempt} attempt(s): {expected}")
                return expected
            log.trace(f"Waiting for {missing} (attempt {attempt}/{self.scan_attempts})")
            _settle()
            time.sleep(self.scan_delay)
        missing = [node for node in expected if not os.path.exists(node)]
        if not missing:
            device.partitions = expected
            return expected
        raise PartitionScanTimeoutError(
            device.name, missing, self.scan_attempts * self.scan_delay
        )

    def unbind(self, device: Optional[BlockDevice]) -> None:
        """Detach ``device``. A never-bound or already-detached handle is a no-op.

        Raises:
            DeviceError: If losetup refuses to detach an attached device
        """
        if device is None or not device.attached or not device.loop_path:
            return
        try:
            result = run_command(
                ["losetup", "--detach", device.loop_path], check=False
            )
        except OSError as error:
            raise DeviceError(
                f"Failed to detach {device.loop_path}: {error}", device=device.loop_path
            ) from error
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            if "No such device" not in message:
                raise DeviceError(
                    f"Failed to detach {device.loop_path}: {message or 'losetup failed'}",
                    device=device.loop_path,
                )
            log.warning(f"{device.loop_path} was already detached")
        device.attached = False
        log.info(f"Detached {device.loop_path}")
