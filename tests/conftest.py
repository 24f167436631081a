"""
Pytest configuration and shared fixtures for vm-image-builder tests.

No test runs a real system tool. Commands go through the run_command /
stream_command seams, which are patched here with fakes that keep enough
state (the mount table, attached loop devices) to check the cleanup
guarantees.
"""

import os
import subprocess
from pathlib import Path
from typing import List
from unittest.mock import Mock

import pytest

from vm_image_builder.config.settings import load_build_config


# ==============================================================================
# Configuration Fixtures
# ==============================================================================


@pytest.fixture
def build_config(tmp_path):
    """Default build configuration writing its images to tmp_path."""
    return load_build_config(
        overrides={
            "image": {
                "raw_path": str(tmp_path / "image.img"),
                "export_path": str(tmp_path / "image.qcow2"),
            }
        },
        environ={},
    )


# ==============================================================================
# Mount Table Fixtures
# ==============================================================================


class FakeMountTable:
    """In-memory mount table driven by the mount/umount commands it sees."""

    def __init__(self) -> None:
        self.targets: List[str] = []
        self.commands: List[List[str]] = []
        self.busy: dict = {}
        self.fail_mount: set = set()

    def active(self) -> List[str]:
        return list(self.targets)

    def run(self, command, check=True, **kwargs):
        command = [str(part) for part in command]
        self.commands.append(command)
        if command[0] == "mount":
            target = os.path.realpath(command[-1])
            if target in self.fail_mount:
                raise subprocess.CalledProcessError(
                    32, command, stderr=f"mount: {target}: mount failed."
                )
            self.targets.append(target)
        elif command[0] == "umount":
            target = os.path.realpath(command[-1])
            if self.busy.get(target, 0) > 0:
                self.busy[target] -= 1
                error = subprocess.CalledProcessError(
                    32, command, stderr=f"umount: {target}: target is busy."
                )
                if check:
                    raise error
                return Mock(returncode=32, stdout="", stderr=error.stderr)
            if target in self.targets:
                self.targets.remove(target)
        return Mock(returncode=0, stdout="", stderr="")

    def mount_calls(self) -> List[str]:
        return [cmd[-1] for cmd in self.commands if cmd[0] == "mount"]

    def umount_calls(self) -> List[str]:
        return [cmd[-1] for cmd in self.commands if cmd[0] == "umount"]


@pytest.fixture
def mount_table(mocker) -> FakeMountTable:
    """Patch the mount module so mounts only happen in a FakeMountTable."""
    table = FakeMountTable()
    mocker.patch(
        "vm_image_builder.storage.mount.active_mountpoints", side_effect=table.active
    )
    mocker.patch("vm_image_builder.storage.mount.run_command", side_effect=table.run)
    mocker.patch("vm_image_builder.storage.mount.time.sleep")
    return table


@pytest.fixture
def mount_dirs(tmp_path) -> Path:
    """A root directory with the subdirectories the chroot plan mounts on."""
    root = tmp_path / "root"
    for sub in ("proc", "sys/firmware", "dev/pts", "dev/shm", "run", "tmp"):
        (root / sub).mkdir(parents=True)
    return root


# ==============================================================================
# Command Fixtures
# ==============================================================================


@pytest.fixture
def completed():
    """Factory for successful command results."""

    def make(stdout: str = "", stderr: str = "", returncode: int = 0) -> Mock:
        return Mock(returncode=returncode, stdout=stdout, stderr=stderr)

    return make
