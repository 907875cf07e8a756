import dataclasses
import hashlib
import struct

import pytest

from conftest import IRAM_ADDR, make_app_elf, need_to_install_package_err

try:
    from espwebflash.assembler import (
        FlashSegment,
        PartsData,
        _update_image_flash_params,
        assemble_flash_image,
        verify_segments,
    )
    from espwebflash.bin_image import LoadFirmwareImage, build_firmware_image
    from espwebflash.partition_table import (
        APP_TYPE,
        DATA_TYPE,
        PartitionDefinition,
        PartitionTable,
        load_partition_table,
    )
    from espwebflash.targets import resolve_chip
    from espwebflash.util import (
        FatalError,
        MalformedPartitionTable,
        MissingBootloader,
        SegmentOverlap,
    )
except ImportError:
    need_to_install_package_err()

SECTION_DATA = bytes(range(16))


def make_bootloader(chip):
    """A valid bootloader image, built with flash settings differing from default"""
    return build_firmware_image(
        make_app_elf(chip, data=b"\x5a" * 32),
        chip,
        flash_size="2MB",
        flash_mode="qio",
        flash_freq="80m",
    )


def make_rom_image(addr, data):
    """ESP8266 ROM image: header, one segment, checksum"""
    image = struct.pack("<BBBBI", 0xE9, 1, 0, 0, addr)
    image += struct.pack("<II", addr, len(data)) + data
    image += b"\x00" * (15 - len(image) % 16)
    checksum = 0xEF
    for b in data:
        checksum ^= b
    return image + bytes([checksum])


@pytest.fixture
def bootloader_dir(tmp_path):
    path = tmp_path / "bootloaders"
    path.mkdir()
    for chip in ("esp32", "esp32s2", "esp32s3", "esp32c3"):
        (path / f"bootloader_{chip}.bin").write_bytes(make_bootloader(chip))
    (path / "bootloader_esp8266.bin").write_bytes(
        make_rom_image(IRAM_ADDR["esp8266"], b"\x5a" * 32)
    )
    return str(path)


@pytest.mark.host_test
class TestAssembleEndToEnd:
    def test_single_section_default_everything(self, bootloader_dir):
        image = assemble_flash_image(
            make_app_elf("esp32"), "esp32", bootloader_dir=bootloader_dir
        )
        assert [s.offset for s in image.segments] == [0x1000, 0x8000, 0x10000]
        assert [s.name for s in image] == [
            "bootloader",
            "partition table",
            "application",
        ]

        app = image.app.data
        assert app[0] == 0xE9
        assert app[1] == 1  # declared segment count
        checksum = 0xEF
        for b in SECTION_DATA:
            checksum ^= b
        assert app[63] == checksum

        table = PartitionTable.from_binary(image.partition_table.data)
        assert table == PartitionTable.default(resolve_chip("esp32"))

    @pytest.mark.parametrize(
        "chip, layout",
        [
            ("esp32s2", [0x1000, 0x8000, 0x10000]),
            ("esp32s3", [0x0, 0x8000, 0x10000]),
            ("esp32c3", [0x0, 0x8000, 0x10000]),
            ("esp8266", [0x0, 0x8000, 0x10000]),
        ],
    )
    def test_layout_per_chip(self, bootloader_dir, chip, layout):
        image = assemble_flash_image(
            make_app_elf(chip), chip, bootloader_dir=bootloader_dir
        )
        assert [s.offset for s in image] == layout
        assert image.profile is resolve_chip(chip)

    def test_overlapping_partition_file_fails(self):
        csv = b"nvs, data, nvs, 0x9000, 0x6000\nphy, data, phy, 0xa000, 0x1000\n"
        # rejected while loading, before anything is assembled
        with pytest.raises(MalformedPartitionTable, match="overlaps"):
            load_partition_table(csv)

    def test_deterministic(self, bootloader_dir):
        elf = make_app_elf("esp32c3")
        first = assemble_flash_image(elf, "esp32c3", bootloader_dir=bootloader_dir)
        second = assemble_flash_image(elf, "esp32c3", bootloader_dir=bootloader_dir)
        assert first.segments == second.segments

    @pytest.mark.parametrize("flash_size", ["xMB", "3MB"])
    def test_invalid_flash_size(self, bootloader_dir, flash_size):
        with pytest.raises(FatalError, match=f"Flash size '{flash_size}'"):
            assemble_flash_image(
                make_app_elf("esp32"),
                "esp32",
                flash_size=flash_size,
                bootloader_dir=bootloader_dir,
            )


@pytest.mark.host_test
class TestBootloader:
    def test_explicit_bootloader_wins(self, tmp_path):
        bootloader = make_bootloader("esp32s3")
        image = assemble_flash_image(
            make_app_elf("esp32s3"),
            "esp32s3",
            bootloader=bootloader,
            bootloader_dir=str(tmp_path),
        )
        assert image.bootloader.offset == 0
        assert len(image.bootloader.data) == len(bootloader)

    def test_missing_bootloader(self, tmp_path):
        with pytest.raises(MissingBootloader, match="bootloader_esp32c3.bin"):
            assemble_flash_image(
                make_app_elf("esp32c3"), "esp32c3", bootloader_dir=str(tmp_path)
            )

    def test_header_updated_and_sha_recomputed(self):
        profile = resolve_chip("esp32")
        original = make_bootloader("esp32")
        assert original[2:4] == bytes([0, 0x1F])

        updated = _update_image_flash_params(profile, "40m", "dio", "4MB", original)
        assert updated[2:4] == bytes([2, 0x20])
        assert updated[4:] != original[4:]  # digest changed
        loaded = LoadFirmwareImage(profile, updated)
        assert loaded.stored_digest == loaded.calc_digest
        assert loaded.stored_digest == hashlib.sha256(updated[:-32]).digest()

    def test_esp8266_header_updated(self):
        profile = resolve_chip("esp8266")
        original = make_rom_image(IRAM_ADDR["esp8266"], b"\x01" * 8)
        updated = _update_image_flash_params(profile, "40m", "dio", "4MB", original)
        assert updated[2:4] == bytes([2, 0x40])
        assert updated[4:] == original[4:]

    def test_not_an_image_is_kept(self, capsys):
        profile = resolve_chip("esp32")
        data = b"\x00" * 64
        assert _update_image_flash_params(profile, "40m", "dio", "4MB", data) is data
        assert "doesn't look like an image" in capsys.readouterr().out

    def test_invalid_image_is_kept(self, capsys):
        profile = resolve_chip("esp32")
        data = b"\xe9\x05" + b"\x00" * 30  # claims 5 segments
        assert _update_image_flash_params(profile, "40m", "dio", "4MB", data) is data
        assert "not a valid ESP32 image" in capsys.readouterr().out

    def test_short_data_is_kept(self):
        data = b"\xe9\x00"
        profile = resolve_chip("esp32")
        assert _update_image_flash_params(profile, "40m", "dio", "4MB", data) is data

    def test_oversized_bootloader_overlaps_table(self):
        with pytest.raises(SegmentOverlap, match="bootloader"):
            assemble_flash_image(
                make_app_elf("esp32"), "esp32", bootloader=b"\x00" * 0x8000
            )


@pytest.mark.host_test
class TestPartitionTableChecks:
    def test_supplied_table_is_serialized(self, bootloader_dir):
        csv = b"nvs, data, nvs, , 0x4000\nfactory, app, factory, 0x10000, 1M\n"
        table = load_partition_table(csv)
        image = assemble_flash_image(
            make_app_elf("esp32"),
            "esp32",
            partition_table=table,
            bootloader_dir=bootloader_dir,
        )
        assert image.partition_table.data == table.to_binary()
        assert image.partition_table.offset == 0x8000

    def test_supplied_table_is_verified(self, bootloader_dir):
        table = PartitionTable(
            [PartitionDefinition("factory", APP_TYPE, 0x1FF, 0x10000, 0x1000)]
        )
        with pytest.raises(MalformedPartitionTable, match="subtype 0x1ff"):
            assemble_flash_image(
                make_app_elf("esp32"),
                "esp32",
                partition_table=table,
                bootloader_dir=bootloader_dir,
            )

    def test_entry_inside_table_segment(self, bootloader_dir):
        table = PartitionTable(
            [
                PartitionDefinition("nvs", DATA_TYPE, 0x02, 0x8000, 0x1000),
                PartitionDefinition("factory", APP_TYPE, 0x00, 0x10000, 0x1000),
            ]
        )
        with pytest.raises(SegmentOverlap, match="Partition 'nvs'"):
            assemble_flash_image(
                make_app_elf("esp32"),
                "esp32",
                partition_table=table,
                bootloader_dir=bootloader_dir,
            )

    def test_no_app_at_app_offset_warns(self, bootloader_dir, capsys):
        table = load_partition_table(
            b"nvs, data, nvs, 0x9000, 0x6000\nfactory, app, factory, 0x20000, 1M\n"
        )
        image = assemble_flash_image(
            make_app_elf("esp32"),
            "esp32",
            partition_table=table,
            bootloader_dir=bootloader_dir,
        )
        assert image.app.offset == 0x10000
        assert "No app partition starts at 0x10000" in capsys.readouterr().out


@pytest.mark.host_test
class TestSegments:
    def test_verify_ok(self):
        verify_segments(
            [FlashSegment(0, b"\x00" * 0x10), FlashSegment(0x10, b"\x00")]
        )

    def test_verify_overlap(self):
        with pytest.raises(SegmentOverlap, match="overlaps"):
            verify_segments(
                [FlashSegment(0, b"\x00" * 0x11, "a"), FlashSegment(0x10, b"", "b")]
            )

    def test_verify_order(self):
        with pytest.raises(SegmentOverlap, match="placed before"):
            verify_segments([FlashSegment(0x10, b"", "a"), FlashSegment(0, b"", "b")])

    def test_segment_is_immutable(self):
        segment = FlashSegment(0, b"")
        with pytest.raises(dataclasses.FrozenInstanceError):
            segment.offset = 1

    def test_parts_data(self, bootloader_dir):
        image = assemble_flash_image(
            make_app_elf("esp32c3"), "ESP32-C3", bootloader_dir=bootloader_dir
        )
        parts = PartsData.from_image(image)
        assert parts.chip_family == "ESP32-C3"
        assert [(name, offset) for name, offset, _ in parts.assets()] == [
            ("bootloader.bin", 0x0),
            ("partitions.bin", 0x8000),
            ("firmware.bin", 0x10000),
        ]
        assert [data for _, _, data in parts.assets()] == [
            s.data for s in image.segments
        ]
        with pytest.raises(dataclasses.FrozenInstanceError):
            parts.firmware = b""
