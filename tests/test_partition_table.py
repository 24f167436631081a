"""Tests for GPT layout validation and sfdisk handling."""

import json
import subprocess
from pathlib import Path

import pytest

from vm_image_builder.domain.models import (
    ESP_TYPE_GUID,
    MIB,
    ROOT_X86_64_TYPE_GUID,
    PartitionSpec,
)
from vm_image_builder.exceptions import ConfigError, DeviceError
from vm_image_builder.storage import partition_table
from vm_image_builder.storage.partition_table import (
    GPT_OVERHEAD_BYTES,
    MIN_GROW_BYTES,
    PartitionRecord,
    parse_sfdisk_json,
    read_partition_table,
    render_sfdisk_script,
    required_size_bytes,
    validate_layout,
    verify_partition_table,
    write_partition_table,
)

ESP = PartitionSpec(ESP_TYPE_GUID, "ESP", 200 * MIB)
ROOT = PartitionSpec(ROOT_X86_64_TYPE_GUID, "Debian", attributes=(59,))
LAYOUT = (ESP, ROOT)


def sfdisk_json(partitions):
    return json.dumps({"partitiontable": {"label": "gpt", "partitions": partitions}})


class TestValidateLayout:
    """Test partition layout validation."""

    def test_default_layout_is_valid(self):
        validate_layout(2 * 1024**3, LAYOUT)

    def test_required_size(self):
        assert required_size_bytes(LAYOUT) == 200 * MIB + GPT_OVERHEAD_BYTES + MIN_GROW_BYTES

    def test_exact_minimum_size_is_valid(self):
        validate_layout(required_size_bytes(LAYOUT), LAYOUT)

    def test_too_small_image(self):
        with pytest.raises(ConfigError, match="too small"):
            validate_layout(required_size_bytes(LAYOUT) - 1, LAYOUT)

    def test_fixed_partitions_larger_than_image(self):
        with pytest.raises(ConfigError):
            validate_layout(100 * MIB, LAYOUT)

    def test_empty_table(self):
        with pytest.raises(ConfigError):
            validate_layout(1024**3, ())

    def test_two_auto_grow_partitions(self):
        other = PartitionSpec(ROOT_X86_64_TYPE_GUID, "Other", 100 * MIB, (59,))
        with pytest.raises(ConfigError, match="Only one partition"):
            validate_layout(1024**3, (ESP, other, ROOT))

    def test_auto_grow_must_be_last(self):
        grow_first = PartitionSpec(ROOT_X86_64_TYPE_GUID, "Debian", 500 * MIB, (59,))
        tail = PartitionSpec(ESP_TYPE_GUID, "ESP", 200 * MIB)
        with pytest.raises(ConfigError, match="last entry"):
            validate_layout(1024**3, (grow_first, tail))

    def test_grow_to_fill_must_be_last(self):
        with pytest.raises(ConfigError, match="grow to fill"):
            validate_layout(1024**3, (PartitionSpec(ESP_TYPE_GUID, "ESP"), PartitionSpec(ROOT_X86_64_TYPE_GUID, "Debian")))

    def test_duplicate_labels(self):
        with pytest.raises(ConfigError, match="Duplicate"):
            validate_layout(1024**3, (ESP, PartitionSpec(ROOT_X86_64_TYPE_GUID, "ESP")))

    @pytest.mark.parametrize("label", ["", 'bad"label', "x" * 37])
    def test_invalid_labels(self, label):
        with pytest.raises(ConfigError):
            validate_layout(1024**3, (ESP, PartitionSpec(ROOT_X86_64_TYPE_GUID, label)))

    def test_size_not_whole_mib(self):
        odd = PartitionSpec(ESP_TYPE_GUID, "ESP", 200 * MIB + 512)
        with pytest.raises(ConfigError, match="whole number of MiB"):
            validate_layout(1024**3, (odd, ROOT))

    def test_attribute_bit_out_of_range(self):
        bad = PartitionSpec(ROOT_X86_64_TYPE_GUID, "Debian", attributes=(64,))
        with pytest.raises(ConfigError, match="attribute bit"):
            validate_layout(1024**3, (ESP, bad))


class TestRenderSfdiskScript:
    """Test sfdisk script rendering."""

    def test_default_layout(self):
        assert render_sfdisk_script(LAYOUT) == (
            "label: gpt\n"
            'type=C12A7328-F81F-11D2-BA4B-00A0C93EC93B, name="ESP", size=409600\n'
            "type=4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709, "
            'name="Debian", attrs="GUID:59"\n'
        )

    def test_rendering_is_deterministic(self):
        assert render_sfdisk_script(LAYOUT) == render_sfdisk_script(tuple(LAYOUT))

    def test_attributes_are_sorted_and_unique(self):
        part = PartitionSpec(ROOT_X86_64_TYPE_GUID, "Debian", attributes=(60, 59, 60))
        assert 'attrs="GUID:59,60"' in render_sfdisk_script((part,))


class TestWritePartitionTable:
    """Test writing the table with sfdisk."""

    def test_pipes_script_to_sfdisk(self, mocker, completed):
        mock_run = mocker.patch.object(
            partition_table, "run_command", return_value=completed()
        )
        write_partition_table(Path("/tmp/image.img"), LAYOUT)

        mock_run.assert_called_once_with(
            ["sfdisk", "--label", "gpt", "/tmp/image.img"],
            input_text=render_sfdisk_script(LAYOUT),
        )

    def test_sfdisk_failure_raises_device_error(self, mocker):
        mocker.patch.object(
            partition_table,
            "run_command",
            side_effect=subprocess.CalledProcessError(
                1, ["sfdisk"], stderr="sfdisk: cannot open image.img"
            ),
        )
        with pytest.raises(DeviceError, match="cannot open") as exc_info:
            write_partition_table(Path("image.img"), LAYOUT)
        assert exc_info.value.device == "image.img"


class TestReadPartitionTable:
    """Test reading the table back."""

    def test_parse_sfdisk_json(self):
        records = parse_sfdisk_json(
            sfdisk_json(
                [
                    {
                        "node": "image.img1",
                        "start": 2048,
                        "size": 409600,
                        "type": "c12a7328-f81f-11d2-ba4b-00a0c93ec93b",
                        "uuid": "AAAA",
                        "name": "ESP",
                    },
                    {
                        "node": "image.img2",
                        "start": 411648,
                        "size": 3782623,
                        "type": "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709",
                        "uuid": "BBBB",
                        "name": "Debian",
                        "attrs": "GUID:59",
                    },
                ]
            )
        )
        assert [r.label for r in records] == ["ESP", "Debian"]
        assert records[0].type_guid == ESP_TYPE_GUID
        assert records[0].attributes == ()
        assert records[1].attributes == (59,)

    def test_parse_combined_attributes(self):
        records = parse_sfdisk_json(
            sfdisk_json([{"name": "x", "attrs": "RequiredPartition GUID:59,60"}])
        )
        assert records[0].attributes == (59, 60)

    @pytest.mark.parametrize("data", ["not json", "{}", "[]"])
    def test_unreadable_output(self, data):
        with pytest.raises(DeviceError):
            parse_sfdisk_json(data)

    def test_read_runs_sfdisk_json(self, mocker, completed):
        mock_run = mocker.patch.object(
            partition_table,
            "run_command",
            return_value=completed(stdout=sfdisk_json([])),
        )
        assert read_partition_table(Path("image.img")) == []
        assert mock_run.call_args[0][0] == ["sfdisk", "--json", "image.img"]

    def test_read_failure(self, mocker):
        mocker.patch.object(
            partition_table, "run_command", side_effect=FileNotFoundError("sfdisk")
        )
        with pytest.raises(DeviceError):
            read_partition_table(Path("image.img"))


class TestVerifyPartitionTable:
    """Test comparing the read-back table with the layout."""

    def records(self, **root_changes):
        root = dict(
            node="p2",
            start=411648,
            size_sectors=1000,
            type_guid=ROOT_X86_64_TYPE_GUID,
            label="Debian",
            uuid="B",
            attributes=(59,),
        )
        root.update(root_changes)
        return [
            PartitionRecord("p1", 2048, 409600, ESP_TYPE_GUID, "ESP", "A"),
            PartitionRecord(**root),
        ]

    def test_matching_table(self):
        verify_partition_table(self.records(), LAYOUT)

    def test_signature_ignores_uuid(self):
        first, second = self.records(uuid="X")[1], self.records(uuid="Y")[1]
        assert first.signature() == second.signature()

    def test_count_mismatch(self):
        with pytest.raises(DeviceError, match="Expected 2"):
            verify_partition_table(self.records()[:1], LAYOUT)

    def test_missing_attribute(self):
        with pytest.raises(DeviceError, match="attributes"):
            verify_partition_table(self.records(attributes=()), LAYOUT)

    def test_wrong_label(self):
        with pytest.raises(DeviceError, match="label"):
            verify_partition_table(self.records(label="Root"), LAYOUT)

    def test_wrong_size(self):
        records = self.records()
        records[0] = PartitionRecord("p1", 2048, 1024, ESP_TYPE_GUID, "ESP")
        with pytest.raises(DeviceError, match="size"):
            verify_partition_table(records, LAYOUT)
