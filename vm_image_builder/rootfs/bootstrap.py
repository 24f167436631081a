"""Root filesystem population.

bootstrap() materializes a minimal Debian tree with debootstrap. Package
installation then runs inside the tree through chroot, with the build's
pseudo-filesystems already mounted below it.

Neither step is retried: a half-populated tree is worse than a clean abort,
and the image is rebuilt from scratch on the next run anyway.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterable

from vm_image_builder.exceptions import BootstrapError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.commands import describe_failure, stream_command


log = LoggerFactory.for_rootfs()

APT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "LANG": "C.UTF-8",
    "LC_ALL": "C.UTF-8",
}


def in_chroot(root: Path, command: list[str]) -> list[str]:
    return ["chroot", str(root), *command]


class RootPopulator:
    """Runs debootstrap and apt-get for the image's root tree."""

    def bootstrap(
        self, target: Path, release: str, mirror: str, arch: str = "amd64"
    ) -> None:
        """
        Raises:
            BootstrapError: If the target is missing or debootstrap fails
        """
        target = Path(target)
        if not target.is_dir():
            raise BootstrapError(f"Bootstrap target {target} does not exist")
        log.info(f"Bootstrapping {release} ({arch}) from {mirror} into {target}")
        try:
            stream_command(["debootstrap", f"--arch={arch}", release, str(target), mirror])
        except (subprocess.CalledProcessError, OSError) as error:
            raise BootstrapError(
                f"debootstrap of {release} failed: {describe_failure(error)}"
            ) from error

    def install_packages(self, target: Path, packages: Iterable[str]) -> None:
        """Install ``packages`` inside ``target`` via chroot.

        Raises:
            BootstrapError: If the chroot cannot be entered or apt-get fails
        """
        target = Path(target)
        names = sorted(set(packages))
        if not names:
            log.info("No packages to install")
            return
        if not (target / "bin" / "sh").exists() and not (target / "usr" / "bin" / "sh").exists():
            raise BootstrapError(f"Cannot enter chroot at {target}: no /bin/sh in tree")

        log.info(f"Installing {len(names)} packages: {' '.join(names)}")
        try:
            stream_command(
                in_chroot(target, ["apt-get", "install", "-y", *names]), env=APT_ENV
            )
        except (subprocess.CalledProcessError, OSError) as error:
            raise BootstrapError(
                f"Package installation failed: {describe_failure(error)}"
            ) from error
