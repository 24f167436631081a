"""Custom exceptions for image build operations.

This module defines a hierarchy of exceptions for the build pipeline so each
stage can fail with an error kind the caller can act on (and map to an exit
code) without parsing messages.

Exception Hierarchy:
    BuildError (base)
        ├── ConfigError
        │   └── PrerequisiteError
        ├── DeviceError
        │   └── PartitionScanTimeoutError
        ├── FilesystemError
        ├── MountError
        │   └── UnmountFailedError
        ├── BootstrapError
        ├── ConfigInjectionError
        │   └── MissingServiceUnitError
        ├── ExportError
        │   └── ExportPreconditionError
        └── BuildInterrupted

Every BuildError carries a ``stage`` attribute. It is ``None`` when raised and
is filled in by the pipeline with the name of the stage that failed.

Usage:
    from vm_image_builder.exceptions import DeviceError

    if size <= 0:
        raise DeviceError(f"Image size must be positive, got {size}")
"""

from __future__ import annotations

from typing import Iterable, Optional


class BuildError(Exception):
    """Base exception for all build operations."""

    exit_code = 1

    def __init__(self, message: str = "", *, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigError(BuildError):
    """Invalid or inconsistent build configuration."""

    exit_code = 2


class PrerequisiteError(ConfigError):
    """Build host is missing privileges or required tools."""

    def __init__(self, missing: Iterable[str], reason: str = ""):
        self.missing = sorted(missing)
        msg = "Build host prerequisites not met"
        if reason:
            msg += f": {reason}"
        if self.missing:
            msg += f" (missing: {', '.join(self.missing)})"
        super().__init__(msg)


class DeviceError(BuildError):
    """Backing file, partition table or loop device failure."""

    exit_code = 3

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class PartitionScanTimeoutError(DeviceError):
    """Partition nodes did not appear after attaching the loop device."""

    def __init__(self, device: str, missing: list[str], timeout: float):
        self.missing = missing
        self.timeout = timeout
        super().__init__(
            f"Partition nodes for {device} did not appear within "
            f"{timeout:.2f}s: {', '.join(missing)}",
            device=device,
        )


class FilesystemError(BuildError):
    """Format, sub-volume or trim failure."""

    exit_code = 4

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class MountError(BuildError):
    """Base exception for mount-related errors."""

    exit_code = 5

    def __init__(self, message: str, target: Optional[str] = None):
        self.target = target
        super().__init__(message)


class UnmountFailedError(MountError):
    """A mount could not be released."""

    def __init__(self, target: str, reason: str = ""):
        self.reason = reason
        msg = f"Failed to unmount {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, target=target)


class BootstrapError(BuildError):
    """Root filesystem population or package installation failure."""

    exit_code = 6


class ConfigInjectionError(BuildError):
    """First-boot configuration could not be written into the image."""

    exit_code = 7

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class MissingServiceUnitError(ConfigInjectionError):
    """Services requested for enablement are not present in the tree."""

    def __init__(self, units: Iterable[str]):
        self.units = sorted(units)
        super().__init__(
            f"Service units not found in image: {', '.join(self.units)}"
        )


class ExportError(BuildError):
    """Format conversion failure."""

    exit_code = 8


class ExportPreconditionError(ExportError):
    """Raw image is still attached or mounted."""

    def __init__(self, raw_path: str, reason: str):
        self.raw_path = raw_path
        self.reason = reason
        super().__init__(f"Cannot export {raw_path}: {reason}")


class BuildInterrupted(BuildError):
    """The build received a termination signal."""

    exit_code = 130

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Build interrupted by signal {signum}")
