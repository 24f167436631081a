"""Domain models for image builds.

This package contains the typed configuration model and the runtime resource
handles passed between pipeline stages.
"""

from __future__ import annotations

from .models import (
    AUTO_GROW_ATTRIBUTE,
    ESP_TYPE_GUID,
    ROOT_X86_64_TYPE_GUID,
    BlockDevice,
    BuildConfig,
    FilesystemLayout,
    HostIdentity,
    ImageSpec,
    MountEntry,
    PartitionSpec,
    human_size,
    parse_size,
)


__all__ = [
    "AUTO_GROW_ATTRIBUTE",
    "ESP_TYPE_GUID",
    "ROOT_X86_64_TYPE_GUID",
    "BlockDevice",
    "BuildConfig",
    "FilesystemLayout",
    "HostIdentity",
    "ImageSpec",
    "MountEntry",
    "PartitionSpec",
    "human_size",
    "parse_size",
]
