"""Conversion of the finished raw image.

Export reads the raw file directly, so it refuses to run while the file is
still attached to a loop device or, when the build context is given, while
any of the build's mounts are still held.
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Optional

from vm_image_builder.build.context import BuildContext
from vm_image_builder.exceptions import ExportError, ExportPreconditionError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.commands import describe_failure, run_command
from vm_image_builder.storage.devices import attached_loop_devices


log = LoggerFactory.for_export()


class ImageExporter:
    """Converts a raw image with qemu-img."""

    def check_preconditions(
        self, raw_path: Path, context: Optional[BuildContext] = None
    ) -> None:
        """
        Raises:
            ExportPreconditionError: If the image is missing, attached or mounted
        """
        raw = str(raw_path)
        if not Path(raw_path).is_file():
            raise ExportPreconditionError(raw, "raw image does not exist")
        if context is not None:
            if context.device is not None and context.device.attached:
                raise ExportPreconditionError(
                    raw, f"still attached to {context.device.loop_path}"
                )
            if context.mounts:
                raise ExportPreconditionError(
                    raw, f"{len(context.mounts)} mount(s) not released"
                )
        attached = attached_loop_devices(Path(raw_path))
        if attached:
            raise ExportPreconditionError(raw, f"still attached to {', '.join(attached)}")

    def export(
        self,
        raw_path: Path,
        fmt: str,
        out_path: Path,
        context: Optional[BuildContext] = None,
    ) -> Path:
        """Convert ``raw_path`` to ``fmt`` at ``out_path``.

        Raises:
            ExportPreconditionError: See check_preconditions()
            ExportError: If qemu-img fails or the result has the wrong format
        """
        self.check_preconditions(raw_path, context)
        log.info(f"Converting {raw_path} to {fmt} at {out_path}")
        try:
            run_command(
                ["qemu-img", "convert", "-f", "raw", "-O", fmt, str(raw_path), str(out_path)]
            )
        except (subprocess.CalledProcessError, OSError) as error:
            raise ExportError(
                f"qemu-img convert to {fmt} failed: {describe_failure(error)}"
            ) from error
        self.verify(out_path, fmt)
        return Path(out_path)

    def verify(self, out_path: Path, fmt: str) -> None:
        try:
            result = run_command(
                ["qemu-img", "info", "--output=json", str(out_path)], log_output=False
            )
            info = json.loads(result.stdout)
        except (subprocess.CalledProcessError, OSError) as error:
            raise ExportError(
                f"qemu-img info failed for {out_path}: {describe_failure(error)}"
            ) from error
        except json.JSONDecodeError as error:
            raise ExportError(f"Unreadable qemu-img info output: {error}") from error
        actual = info.get("format")
        if actual != fmt:
            raise ExportError(f"{out_path} has format {actual!r}, expected {fmt!r}")
        log.debug(f"{out_path} verified as {fmt}, virtual size {info.get('virtual-size')}")
