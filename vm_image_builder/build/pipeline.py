"""Staged image build.

Stages run strictly in order; the first failure ends the build. Every stage
from ``scratch`` to ``finalize`` runs inside the CleanupController, so the
acquired resources are released before run() returns or raises, whichever
stage failed. Export only runs after that release.

Stages:
    preflight      configuration and build host checks
    scratch        scratch mount and masked directories
    bind           sparse file, GPT, loop device, partition nodes
    format         FAT32 ESP, Btrfs root with default sub-volume
    mount-root     root sub-volume on the scratch directory
    bootstrap      debootstrap into the root
    mount-chroot   ESP and pseudo-filesystems below the root
    prepare        machine-id reset and kernel command line
    install        package installation inside the chroot
    configure      first-boot settings and service enablement
    finalize       sync and trim
    release        cleanup (always runs)
    export         qemu-img conversion

Failed builds leave the raw image on disk for inspection.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from vm_image_builder.build import host
from vm_image_builder.build.cleanup import CleanupController
from vm_image_builder.build.context import BuildContext
from vm_image_builder.build.export import ImageExporter
from vm_image_builder.domain.models import BuildConfig
from vm_image_builder.exceptions import BuildError, DeviceError
from vm_image_builder.logging import LoggerFactory, build_context, new_build_id, operation_context
from vm_image_builder.rootfs.bootstrap import RootPopulator
from vm_image_builder.rootfs.configure import ConfigInjector
from vm_image_builder.storage import partition_table
from vm_image_builder.storage.devices import BlockDeviceBinder
from vm_image_builder.storage.format import FilesystemProvisioner
from vm_image_builder.storage.mount import chroot_mount_plan, root_mount_entry


log = LoggerFactory.for_pipeline()

STAGES = (
    "preflight",
    "scratch",
    "bind",
    "format",
    "mount-root",
    "bootstrap",
    "mount-chroot",
    "prepare",
    "install",
    "configure",
    "finalize",
    "release",
    "export",
)


@dataclass
class BuildResult:
    raw_path: Path
    export_path: Path
    build_id: str
    completed: list[str] = field(default_factory=list)


class Pipeline:
    """Builds one image from a BuildConfig."""

    def __init__(
        self,
        config: BuildConfig,
        *,
        binder: Optional[BlockDeviceBinder] = None,
        provisioner: Optional[FilesystemProvisioner] = None,
        populator: Optional[RootPopulator] = None,
        injector: Optional[ConfigInjector] = None,
        exporter: Optional[ImageExporter] = None,
        check_host: bool = True,
        scratch_parent: Optional[Path] = None,
        handle_signals: bool = True,
    ):
        self.config = config
        self.binder = binder or BlockDeviceBinder()
        self.provisioner = provisioner or FilesystemProvisioner()
        self.populator = populator or RootPopulator()
        self.injector = injector or ConfigInjector(config)
        self.exporter = exporter or ImageExporter()
        self.check_host = check_host
        self.scratch_parent = scratch_parent
        self.handle_signals = handle_signals
        self.context = BuildContext(config)
        self.completed: list[str] = []

    @contextmanager
    def _stage(self, name: str, **details) -> Iterator[None]:
        try:
            with operation_context(name, **details):
                yield
        except BuildError as error:
            if error.stage is None:
                error.stage = name
            raise
        self.completed.append(name)

    def run(self) -> BuildResult:
        """Run every stage.

        Raises:
            BuildError: The first failure, with ``stage`` set
            KeyboardInterrupt: If interrupted with Ctrl-C (after unwinding)
        """
        build_id = new_build_id()
        with build_context(build_id, image=str(self.config.image.raw_path)):
            log.info(f"Building {self.config.image.raw_path} ({build_id})")
            with self._stage("preflight"):
                self.preflight()

            cleanup = CleanupController(
                self.context, self.binder, handle_signals=self.handle_signals
            )
            with cleanup:
                self._acquire_and_populate()

            with self._stage("release"):
                self._check_released(cleanup)

            with self._stage("export", format=self.config.image.export_format):
                self.exporter.export(
                    self.config.image.raw_path,
                    self.config.image.export_format,
                    self.config.image.export_path,
                    context=self.context,
                )
            log.success(f"Finished without errors: {self.config.image.export_path}")
            return BuildResult(
                raw_path=self.config.image.raw_path,
                export_path=self.config.image.export_path,
                build_id=build_id,
                completed=list(self.completed),
            )

    def preflight(self) -> None:
        image = self.config.image
        partition_table.validate_layout(image.size_bytes, image.partitions)
        if self.check_host:
            host.check_host()

    def _acquire_and_populate(self) -> None:
        context = self.context
        config = self.config
        image = config.image
        layout = config.layout

        with self._stage("scratch"):
            context.create_scratch_dirs(self.scratch_parent)

        with self._stage("bind", image=str(image.raw_path)):
            self.binder.bind(
                image.raw_path,
                image.size_bytes,
                image.partitions,
                on_attached=context.attach_device,
            )

        device = context.device
        esp_device = device.partitions[0]
        root_device = device.partitions[-1]

        with self._stage("format"):
            self.provisioner.format_esp(esp_device, layout.esp_label)
            self.provisioner.format_root(
                root_device,
                layout.root_label,
                layout.root_subvolume,
                context.mounts,
                context.root,
            )

        with self._stage("mount-root"):
            entry = context.mounts.acquire(root_mount_entry(root_device, context.root, layout))
            context.record_mount(entry.describe())

        with self._stage("bootstrap", release=config.release):
            self.populator.bootstrap(context.root, config.release, config.mirror, config.arch)

        with self._stage("mount-chroot"):
            for entry in chroot_mount_plan(context.root, esp_device, context.mask_dir, layout):
                context.mounts.acquire(entry)
                context.record_mount(entry.describe())

        with self._stage("prepare"):
            self.injector.prepare_kernel_install(context.root)

        with self._stage("install", packages=len(config.packages)):
            self.populator.install_packages(context.root, config.packages)

        with self._stage("configure"):
            self.injector.inject(context.root)
            self.injector.enable_services(context.root, config.services)

        with self._stage("finalize"):
            self.provisioner.sync(context.root / "etc" / "os-release")
            self.provisioner.trim(context.root / layout.esp_dir)
            self.provisioner.trim(context.root)

    def _check_released(self, cleanup: CleanupController) -> None:
        """Fail if unwinding left a mount or the loop device behind."""
        for error in cleanup.errors:
            if not isinstance(error, BuildError):
                log.warning(f"Cleanup problem: {error}")
        error = cleanup.first_error()
        if error is not None:
            raise error
        residual = cleanup.residual_resources()
        if residual:
            raise DeviceError(f"Resources still held after cleanup: {', '.join(residual)}")
