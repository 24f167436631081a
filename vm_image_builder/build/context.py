"""State shared by all stages of one build.

A BuildContext owns every OS-level resource the build acquires: the scratch
mount directory, the masked firmware directory, the loop device and the
mount stack. Stages register a resource with the context the moment it is
acquired, so the CleanupController can always release it.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from vm_image_builder.domain.models import BlockDevice, BuildConfig
from vm_image_builder.logging import EventLogger, LoggerFactory
from vm_image_builder.storage.mount import MountStack


log = LoggerFactory.for_pipeline()


@dataclass
class BuildContext:
    config: BuildConfig
    mount_dir: Optional[Path] = None
    mask_dir: Optional[Path] = None
    device: Optional[BlockDevice] = None
    mounts: MountStack = field(default_factory=MountStack)
    acquired: list[str] = field(default_factory=list)

    @property
    def root(self) -> Path:
        if self.mount_dir is None:
            raise RuntimeError("Scratch directories have not been created")
        return self.mount_dir

    @property
    def scratch_dirs(self) -> list[Path]:
        """Scratch directories in creation order."""
        return [path for path in (self.mount_dir, self.mask_dir) if path is not None]

    def create_scratch_dirs(self, parent: Optional[Path] = None) -> None:
        """Create the mount-point and masked-path scratch directories."""
        self.mount_dir = Path(tempfile.mkdtemp(prefix="vmimg-root-", dir=parent))
        self._record("directory", str(self.mount_dir))
        self.mask_dir = Path(tempfile.mkdtemp(prefix="vmimg-mask-", dir=parent))
        self._record("directory", str(self.mask_dir))

    def attach_device(self, device: BlockDevice) -> None:
        """Register the loop device as soon as it is attached."""
        self.device = device
        self._record("loop device", device.name)

    def record_mount(self, description: str) -> None:
        self._record("mount", description)

    def _record(self, kind: str, resource: str) -> None:
        self.acquired.append(f"{kind}:{resource}")
        EventLogger.log_resource_acquired(log, kind, resource)
