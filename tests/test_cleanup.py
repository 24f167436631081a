"""Tests for build resource unwinding."""

import os
import signal
from pathlib import Path
from unittest.mock import Mock

import pytest

from vm_image_builder.build.cleanup import CleanupController
from vm_image_builder.build.context import BuildContext
from vm_image_builder.domain.models import BlockDevice, MountEntry
from vm_image_builder.exceptions import (
    BuildInterrupted,
    DeviceError,
    MountError,
    UnmountFailedError,
)
from vm_image_builder.storage.devices import BlockDeviceBinder


def real(path):
    return os.path.realpath(str(path))


@pytest.fixture
def binder():
    """A binder whose unbind flips the device to detached."""
    mock = Mock(spec=BlockDeviceBinder)

    def unbind(device):
        device.attached = False

    mock.unbind.side_effect = unbind
    return mock


@pytest.fixture
def no_loop_devices(mocker):
    return mocker.patch(
        "vm_image_builder.build.cleanup.attached_loop_devices", return_value=[]
    )


@pytest.fixture
def context(build_config, tmp_path):
    ctx = BuildContext(build_config)
    ctx.create_scratch_dirs(tmp_path)
    return ctx


def acquire_tree(context):
    """Mount root, proc and run below the context's mount directory."""
    root = context.root
    (root / "proc").mkdir()
    (root / "run").mkdir()
    for entry in (
        MountEntry(root, "/dev/loop0p2"),
        MountEntry(root / "proc", "proc", "proc"),
        MountEntry(root / "run", "run", "tmpfs"),
    ):
        context.mounts.acquire(entry)


class TestBuildContext:
    def test_scratch_dirs(self, context, tmp_path):
        assert [d.parent for d in context.scratch_dirs] == [tmp_path, tmp_path]
        assert context.mount_dir.name.startswith("vmimg-root-")
        assert context.mask_dir.name.startswith("vmimg-mask-")
        assert context.acquired == [
            f"directory:{context.mount_dir}",
            f"directory:{context.mask_dir}",
        ]

    def test_root_before_scratch_dirs(self, build_config):
        with pytest.raises(RuntimeError):
            BuildContext(build_config).root

    def test_attach_device_records(self, context):
        context.attach_device(BlockDevice(Path("image.img"), "/dev/loop9", attached=True))
        assert context.acquired[-1] == "loop device:/dev/loop9"


class TestUnwind:
    """Test the order and completeness of cleanup."""

    def test_full_unwind_order(self, context, binder, mount_table, no_loop_devices):
        calls = []
        device = BlockDevice(Path("image.img"), "/dev/loop0", attached=True)
        context.attach_device(device)
        acquire_tree(context)
        binder.unbind.side_effect = lambda d: calls.append(("unbind", list(mount_table.active())))

        controller = CleanupController(context, binder, handle_signals=False)
        errors = controller.unwind()

        assert errors == []
        assert mount_table.umount_calls() == [
            str(context.root / "run"),
            str(context.root / "proc"),
            str(context.root),
        ]
        # the loop device is detached only after every mount is gone
        assert calls == [("unbind", [])]
        assert not context.mount_dir.exists()
        assert not context.mask_dir.exists()

    def test_unwind_runs_once(self, context, binder, mount_table, no_loop_devices):
        context.attach_device(BlockDevice(Path("image.img"), "/dev/loop0", attached=True))
        controller = CleanupController(context, binder, handle_signals=False)

        controller.unwind()
        controller.unwind()

        binder.unbind.assert_called_once()

    def test_nothing_acquired(self, build_config, binder, mount_table):
        controller = CleanupController(BuildContext(build_config), binder, handle_signals=False)
        assert controller.unwind() == []
        binder.unbind.assert_not_called()
        assert mount_table.commands == []

    def test_busy_mount_does_not_stop_detach(self, context, binder, mount_table, no_loop_devices):
        context.attach_device(BlockDevice(Path("image.img"), "/dev/loop0", attached=True))
        acquire_tree(context)
        mount_table.busy[real(context.root / "proc")] = 99

        controller = CleanupController(context, binder, handle_signals=False)
        errors = controller.unwind()

        binder.unbind.assert_called_once()
        assert any(isinstance(e, UnmountFailedError) for e in errors)
        # the mount directory still has proc mounted below it, so it is kept
        assert context.mount_dir.exists()
        assert (context.mount_dir / "proc").exists()
        assert not context.mask_dir.exists()
        assert any(isinstance(e, MountError) and "Not removing" in str(e) for e in errors)
        assert controller.residual_resources() == [f"mount:{real(context.root / 'proc')}"]
        assert isinstance(controller.first_error(), UnmountFailedError)

    def test_detach_failure_recorded(self, context, binder, mount_table, no_loop_devices):
        context.attach_device(BlockDevice(Path("image.img"), "/dev/loop0", attached=True))
        binder.unbind.side_effect = DeviceError("Failed to detach /dev/loop0")

        controller = CleanupController(context, binder, handle_signals=False)
        errors = controller.unwind()

        assert len(errors) == 1
        assert isinstance(controller.first_error(), DeviceError)
        # scratch directories are still removed
        assert not context.mount_dir.exists()

    def test_braces_in_paths(self, build_config, binder, mount_table, no_loop_devices, tmp_path):
        parent = tmp_path / "scratch{0}{x}"
        parent.mkdir()
        context = BuildContext(build_config)
        context.create_scratch_dirs(parent)
        context.attach_device(BlockDevice(Path("image{0}.img"), "/dev/loop0", attached=True))
        acquire_tree(context)
        mount_table.busy[real(context.root / "proc")] = 99

        controller = CleanupController(context, binder, handle_signals=False)
        errors = controller.unwind()

        binder.unbind.assert_called_once()
        assert any(isinstance(e, UnmountFailedError) for e in errors)
        assert not context.mask_dir.exists()

    def test_unexpected_error_does_not_stop_unwind(
        self, context, binder, mount_table, no_loop_devices
    ):
        context.attach_device(BlockDevice(Path("image.img"), "/dev/loop0", attached=True))
        acquire_tree(context)
        binder.unbind.side_effect = RuntimeError("losetup vanished")

        controller = CleanupController(context, binder, handle_signals=False)
        errors = controller.unwind()

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert mount_table.active() == []
        assert not context.mount_dir.exists()
        assert not context.mask_dir.exists()

    def test_residual_loop_device(self, context, binder, mount_table, mocker):
        context.config.image.raw_path.write_bytes(b"")
        mocker.patch(
            "vm_image_builder.build.cleanup.attached_loop_devices", return_value=["/dev/loop4"]
        )
        controller = CleanupController(context, binder, handle_signals=False)
        controller.unwind()
        assert controller.residual_resources() == ["loop device:/dev/loop4"]


class TestContextManager:
    """Test unwinding on every way out of the block."""

    def test_unwinds_on_success(self, context, binder, mount_table, no_loop_devices):
        with CleanupController(context, binder, handle_signals=False) as controller:
            acquire_tree(context)
        assert controller.unwound
        assert mount_table.active() == []

    def test_unwinds_on_error_and_propagates(self, context, binder, mount_table, no_loop_devices):
        with pytest.raises(ValueError):
            with CleanupController(context, binder, handle_signals=False):
                acquire_tree(context)
                raise ValueError("stage failed")
        assert mount_table.active() == []

    def test_unwinds_on_keyboard_interrupt(self, context, binder, mount_table, no_loop_devices):
        with pytest.raises(KeyboardInterrupt):
            with CleanupController(context, binder, handle_signals=False):
                acquire_tree(context)
                raise KeyboardInterrupt
        assert mount_table.active() == []

    def test_sigterm_becomes_build_interrupted(
        self, context, binder, mount_table, no_loop_devices
    ):
        previous = signal.getsignal(signal.SIGTERM)

        with pytest.raises(BuildInterrupted) as exc_info:
            with CleanupController(context, binder, handle_signals=True):
                acquire_tree(context)
                os.kill(os.getpid(), signal.SIGTERM)

        assert exc_info.value.signum == signal.SIGTERM
        assert mount_table.active() == []
        assert signal.getsignal(signal.SIGTERM) == previous
