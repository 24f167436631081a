"""Resource unwinding for a build.

CleanupController is the single place that releases what a build acquired.
It wraps the acquisition stages as a context manager and, whatever way the
block is left (normal exit, a BuildError, any other exception, Ctrl-C, or
SIGTERM/SIGHUP), unwinds the BuildContext exactly once:

    1. release the mount stack (last mount first)
    2. detach the loop device
    3. remove the scratch directories (masked directory, then mount directory)

Each step is best-effort: a failure is recorded in ``errors`` and logged, and
the remaining steps still run. A scratch directory that still has something
mounted below it is never removed, so a failed unmount can not turn into
deleting files from a mounted filesystem.
"""

from __future__ import annotations

import shutil
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from vm_image_builder.build.context import BuildContext
from vm_image_builder.exceptions import BuildError, BuildInterrupted, MountError
from vm_image_builder.logging import EventLogger, LoggerFactory
from vm_image_builder.storage.devices import BlockDeviceBinder, attached_loop_devices
from vm_image_builder.storage.mount import mounts_below


log = LoggerFactory.for_cleanup()

INTERRUPT_SIGNALS = tuple(
    sig for sig in (signal.SIGINT, signal.SIGTERM, getattr(signal, "SIGHUP", None)) if sig
)
TERMINATION_SIGNALS = tuple(sig for sig in INTERRUPT_SIGNALS if sig != signal.SIGINT)


def _raise_interrupted(signum, frame) -> None:
    raise BuildInterrupted(signum)


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


class CleanupController:
    """Unwinds a BuildContext in reverse acquisition order, exactly once."""

    def __init__(
        self,
        context: BuildContext,
        binder: BlockDeviceBinder,
        handle_signals: bool = True,
    ):
        self.context = context
        self.binder = binder
        self.handle_signals = handle_signals and _in_main_thread()
        self.errors: list[BaseException] = []
        self.unwound = False
        self._previous_handlers: dict[int, object] = {}

    def __enter__(self) -> CleanupController:
        if self.handle_signals:
            for sig in TERMINATION_SIGNALS:
                self._previous_handlers[sig] = signal.signal(sig, _raise_interrupted)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc is not None:
                log.warning(f"Unwinding after {type(exc).__name__}: {exc}")
            self.unwind()
        finally:
            self._restore_handlers()
        return False

    def _restore_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    @contextmanager
    def _signals_ignored(self) -> Iterator[None]:
        if not self.handle_signals:
            yield
            return
        saved = {sig: signal.signal(sig, signal.SIG_IGN) for sig in INTERRUPT_SIGNALS}
        try:
            yield
        finally:
            for sig, handler in saved.items():
                signal.signal(sig, handler)

    def _record(self, kind: str, resource: str, error: BaseException) -> None:
        self.errors.append(error)
        EventLogger.log_release_failed(log, kind, resource, error)

    def _guarded(self, kind: str, step: Callable[..., None], *args) -> None:
        # one failing step must not keep the later ones from running
        try:
            step(*args)
        except Exception as error:
            if not any(error is recorded for recorded in self.errors):
                self.errors.append(error)
            log.opt(exception=error).error(f"Unexpected error while releasing {kind}")

    def unwind(self) -> list[BaseException]:
        """Release everything the context holds. Safe to call repeatedly."""
        if self.unwound:
            return self.errors
        self.unwound = True
        context = self.context
        log.info("Executing cleanup")

        with self._signals_ignored():
            self._guarded("mounts", self._release_mounts)
            self._guarded("loop device", self._detach_device)
            for directory in reversed(context.scratch_dirs):
                self._guarded("directory", self._remove_directory, directory)

        if self.errors:
            log.error(f"Cleanup finished with {len(self.errors)} error(s)")
        else:
            log.info("Cleanup finished")
        return self.errors

    def _release_mounts(self) -> None:
        for error in self.context.mounts.release():
            self._record("mount", str(error.target), error)

    def _detach_device(self) -> None:
        device = self.context.device
        if device is None or not device.attached:
            return
        try:
            self.binder.unbind(device)
            EventLogger.log_resource_released(log, "loop device", device.name)
        except BuildError as error:
            self._record("loop device", device.name, error)

    def _remove_directory(self, directory: Path) -> None:
        if not directory.exists():
            return
        still_mounted = mounts_below(directory)
        if still_mounted:
            self._record(
                "directory",
                str(directory),
                MountError(
                    f"Not removing {directory}, still mounted: {', '.join(still_mounted)}",
                    target=str(directory),
                ),
            )
            return
        try:
            shutil.rmtree(directory)
            EventLogger.log_resource_released(log, "directory", str(directory))
        except OSError as error:
            self._record("directory", str(directory), error)

    def residual_resources(self) -> list[str]:
        """Mounts and loop devices that are still held after unwinding."""
        residual: list[str] = []
        if self.context.mount_dir is not None:
            residual.extend(f"mount:{target}" for target in mounts_below(self.context.mount_dir))
        raw_path = self.context.config.image.raw_path
        if Path(raw_path).exists():
            residual.extend(f"loop device:{dev}" for dev in attached_loop_devices(raw_path))
        return residual

    def first_error(self) -> Optional[BuildError]:
        for error in self.errors:
            if isinstance(error, BuildError):
                return error
        return None
