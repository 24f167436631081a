"""GPT layout validation, sfdisk script rendering and table read-back.

The layout is written with sfdisk(8) from a script rendered here. Rendering
is deterministic: the same list of PartitionSpec always produces the same
script, so two builds get tables with the same types, labels, sizes and
attribute bits. Only the per-partition UUIDs, which sfdisk generates, differ.
"""
from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from vm_image_builder.domain.models import MIB, SECTOR_SIZE, PartitionSpec, human_size
from vm_image_builder.exceptions import ConfigError, DeviceError
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.commands import describe_failure, run_command


log = LoggerFactory.for_device()

# sfdisk places the first partition at 1 MiB
FIRST_PARTITION_OFFSET = MIB
# Backup GPT: 32 sectors of entries plus the header
BACKUP_GPT_SECTORS = 33
GPT_OVERHEAD_BYTES = FIRST_PARTITION_OFFSET + BACKUP_GPT_SECTORS * SECTOR_SIZE
# Smallest partition a grow-to-fill entry may end up with
MIN_GROW_BYTES = MIB
MAX_LABEL_LENGTH = 36


@dataclass(frozen=True)
class PartitionRecord:
    """One partition as read back from a written table."""

    node: str
    start: int
    size_sectors: int
    type_guid: str
    label: str
    uuid: Optional[str] = None
    attributes: tuple[int, ...] = ()

    def signature(self) -> tuple:
        """Everything that must match between builds (UUID excluded)."""
        return (self.type_guid, self.label, self.size_sectors, self.attributes)


def required_size_bytes(partitions: Sequence[PartitionSpec]) -> int:
    """Minimum image size that fits ``partitions``."""
    fixed = sum(part.size_bytes or 0 for part in partitions)
    grow = MIN_GROW_BYTES if any(part.grows_to_fill for part in partitions) else 0
    return fixed + GPT_OVERHEAD_BYTES + grow


def validate_layout(size_bytes: int, partitions: Sequence[PartitionSpec]) -> None:
    """Check a partition list against the image size.

    Raises:
        ConfigError: On any inconsistency
    """
    if not partitions:
        raise ConfigError("Partition table must contain at least one partition")

    last_index = len(partitions) - 1
    labels: set[str] = set()
    auto_grow = [i for i, part in enumerate(partitions) if part.auto_grow]

    if len(auto_grow) > 1:
        raise ConfigError(
            f"Only one partition may carry the auto-grow flag, found {len(auto_grow)}"
        )
    if auto_grow and auto_grow[0] != last_index:
        raise ConfigError(
            f"Auto-grow partition {partitions[auto_grow[0]].label!r} must be the last entry"
        )

    for index, part in enumerate(partitions):
        if not part.label:
            raise ConfigError(f"Partition {index + 1} has no label")
        if len(part.label) > MAX_LABEL_LENGTH or '"' in part.label:
            raise ConfigError(f"Invalid partition label: {part.label!r}")
        if part.label in labels:
            raise ConfigError(f"Duplicate partition label: {part.label!r}")
        labels.add(part.label)
        if part.grows_to_fill and index != last_index:
            raise ConfigError(
                f"Only the last partition may grow to fill, not {part.label!r}"
            )
        if part.size_bytes is not None:
            if part.size_bytes <= 0 or part.size_bytes % MIB:
                raise ConfigError(
                    f"Partition {part.label!r} size must be a positive whole "
                    f"number of MiB, got {part.size_bytes}"
                )
        for bit in part.attributes:
            if not 0 <= bit <= 63:
                raise ConfigError(f"Invalid GPT attribute bit {bit} on {part.label!r}")

    required = required_size_bytes(partitions)
    if size_bytes < required:
        raise ConfigError(
            f"Image size {human_size(size_bytes)} is too small for the partition "
            f"table, at least {human_size(required)} needed"
        )


def render_sfdisk_script(partitions: Sequence[PartitionSpec]) -> str:
    """Render the sfdisk input for a GPT with ``partitions`` in order."""
    lines = ["label: gpt"]
    for part in partitions:
        fields = [f"type={part.type_guid}", f'name="{part.label}"']
        if part.size_bytes is not None:
            fields.append(f"size={part.size_bytes // SECTOR_SIZE}")
        if part.attributes:
            bits = ",".join(str(bit) for bit in sorted(set(part.attributes)))
            fields.append(f'attrs="GUID:{bits}"')
        lines.append(", ".join(fields))
    return "\n".join(lines) + "\n"


def write_partition_table(path: Path, partitions: Sequence[PartitionSpec]) -> None:
    """Write a GPT to the image file at ``path``.

    Raises:
        DeviceError: If sfdisk fails
    """
    script = render_sfdisk_script(partitions)
    log.debug(f"Writing GPT to {path}:\n{script.rstrip()}")
    try:
        run_command(["sfdisk", "--label", "gpt", str(path)], input_text=script)
    except (subprocess.CalledProcessError, OSError) as error:
        raise DeviceError(
            f"Failed to write partition table to {path}: {describe_failure(error)}",
            device=str(path),
        ) from error


def _parse_attributes(attrs: str) -> tuple[int, ...]:
    # sfdisk prints e.g. "GUID:59" or "RequiredPartition GUID:59,60"
    bits: list[int] = []
    for token in attrs.replace(" ", ",").split(","):
        token = token.strip()
        if token.startswith("GUID:"):
            token = token[len("GUID:"):]
        if token.isdigit():
            bits.append(int(token))
    return tuple(sorted(bits))


def parse_sfdisk_json(data: str) -> list[PartitionRecord]:
    try:
        table = json.loads(data)["partitiontable"]
    except (json.JSONDecodeError, KeyError, TypeError) as error:
        raise DeviceError(f"Unreadable sfdisk output: {error}") from error
    records = []
    for entry in table.get("partitions", []):
        records.append(
            PartitionRecord(
                node=entry.get("node", ""),
                start=int(entry.get("start", 0)),
                size_sectors=int(entry.get("size", 0)),
                type_guid=str(entry.get("type", "")).upper(),
                label=entry.get("name", ""),
                uuid=entry.get("uuid"),
                attributes=_parse_attributes(entry.get("attrs", "")),
            )
        )
    return records


def read_partition_table(path: Path) -> list[PartitionRecord]:
    """Read the GPT back from ``path``.

    Raises:
        DeviceError: If sfdisk fails or prints something unexpected
    """
    try:
        result = run_command(["sfdisk", "--json", str(path)], log_output=False)
    except (subprocess.CalledProcessError, OSError) as error:
        raise DeviceError(
            f"Failed to read partition table from {path}: {describe_failure(error)}",
            device=str(path),
        ) from error
    return parse_sfdisk_json(result.stdout)


def verify_partition_table(
    records: Sequence[PartitionRecord], partitions: Sequence[PartitionSpec]
) -> None:
    """Check a read-back table against the requested layout.

    Raises:
        DeviceError: On any mismatch in count, type, label, size or attributes
    """
    if len(records) != len(partitions):
        raise DeviceError(
            f"Expected {len(partitions)} partitions, table has {len(records)}"
        )
    for record, part in zip(records, partitions):
        expected_attrs = tuple(sorted(set(part.attributes)))
        problems = []
        if record.type_guid != part.type_guid.upper():
            problems.append(f"type {record.type_guid}")
        if record.label != part.label:
            problems.append(f"label {record.label!r}")
        if part.size_bytes is not None and record.size_sectors != part.size_bytes // SECTOR_SIZE:
            problems.append(f"size {record.size_sectors} sectors")
        if record.attributes != expected_attrs:
            problems.append(f"attributes {record.attributes}")
        if problems:
            raise DeviceError(
                f"Partition {part.label!r} written incorrectly: {', '.join(problems)}",
                device=record.node,
            )
