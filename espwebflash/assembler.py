# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import hashlib
import itertools
import struct
from dataclasses import dataclass

from .bin_image import ELFFile, LoadFirmwareImage, build_firmware_image
from .logger import log
from .partition_table import PartitionTable
from .profile import (
    DEFAULT_FLASH_FREQ,
    DEFAULT_FLASH_MODE,
    DEFAULT_FLASH_SIZE,
    ChipProfile,
    get_bootloader_path,
)
from .targets import resolve_chip
from .util import (
    FatalError,
    MissingBootloader,
    SegmentOverlap,
    flash_size_bytes,
    hexify,
)


@dataclass(frozen=True)
class FlashSegment:
    """A payload and the absolute flash offset it is written to"""

    offset: int
    data: bytes
    name: str = ""

    @property
    def end(self):
        return self.offset + len(self.data)

    def __repr__(self):
        return f"FlashSegment({self.name!r}, {self.offset:#x}, {len(self.data)} bytes)"


@dataclass(frozen=True)
class FlashImage:
    """The bootloader, partition table and application of one chip, in that order"""

    profile: type[ChipProfile]
    bootloader: FlashSegment
    partition_table: FlashSegment
    app: FlashSegment

    @property
    def segments(self):
        return (self.bootloader, self.partition_table, self.app)

    def __iter__(self):
        return iter(self.segments)


@dataclass(frozen=True)
class PartsData:
    """
    Immutable snapshot of an assembled image set, as served to the browser.
    Created once at startup and shared read-only by all request handlers.
    """

    chip_family: str
    bootloader: bytes
    partitions: bytes
    firmware: bytes
    bootloader_offset: int
    partitions_offset: int
    firmware_offset: int

    @classmethod
    def from_image(cls, image: FlashImage):
        return cls(
            chip_family=image.profile.CHIP_FAMILY,
            bootloader=image.bootloader.data,
            partitions=image.partition_table.data,
            firmware=image.app.data,
            bootloader_offset=image.bootloader.offset,
            partitions_offset=image.partition_table.offset,
            firmware_offset=image.app.offset,
        )

    def assets(self):
        """Return (asset file name, flash offset, payload) in flashing order"""
        return (
            ("bootloader.bin", self.bootloader_offset, self.bootloader),
            ("partitions.bin", self.partitions_offset, self.partitions),
            ("firmware.bin", self.firmware_offset, self.firmware),
        )


def _update_image_flash_params(profile, flash_freq, flash_mode, flash_size, image):
    """
    Update the flash mode, size, and freq parameters in a bootloader image,
    if applicable.

    Returns the modified image data (with recalculated SHA256 digest, if the image
    has one appended), or the original image if it doesn't look like a bootloader
    image of this chip.
    """
    if len(image) < 8:
        return image  # not long enough to be a bootloader image

    # unpack the (potential) image header
    magic, _, img_flash_mode, img_flash_size_freq = struct.unpack("BBBB", image[:4])

    # easy check if this is an image: does it start with a magic byte?
    if magic != profile.ESP_IMAGE_MAGIC:
        log.warning(
            "Bootloader doesn't look like an image file, "
            "so not changing any flash settings."
        )
        return image

    # make sure this really is an image, and not just data that
    # starts with the magic byte
    try:
        test_image = LoadFirmwareImage(profile, image)
    except FatalError:
        log.warning(
            f"Bootloader is not a valid {profile.CHIP_NAME} image, "
            "so not changing any flash settings."
        )
        return image

    img_flash_mode = profile.parse_flash_mode_arg(flash_mode)
    img_flash_freq = profile.parse_flash_freq_arg(flash_freq)
    img_flash_size = profile.parse_flash_size_arg(flash_size)

    flash_params = struct.pack(b"BB", img_flash_mode, img_flash_size + img_flash_freq)
    if flash_params != image[2:4]:
        log.print(
            f"Bootloader flash parameters set to "
            f"{struct.unpack('>H', flash_params)[0]:#06x}."
        )
        image = image[0:2] + flash_params + image[4:]

    # The extended header says if the image is protected by a SHA256 digest.
    # In that case recalculate it after modifying the header.
    if test_image.append_digest:
        image_data_before_sha = image[: test_image.data_length]
        image_data_after_sha = image[
            (test_image.data_length + test_image.SHA256_DIGEST_LEN) :
        ]

        sha_digest_calculated = hashlib.sha256(image_data_before_sha).digest()
        image = bytes(
            itertools.chain(
                image_data_before_sha, sha_digest_calculated, image_data_after_sha
            )
        )
        log.detail(f"Bootloader SHA digest updated: {hexify(sha_digest_calculated)}")

    return image


def resolve_bootloader(profile, bootloader=None, bootloader_dir=None):
    """Return the explicit bootloader, or the chip's default one"""
    if bootloader is not None:
        return bootloader
    bootloader = profile.default_bootloader(bootloader_dir)
    if bootloader is None:
        raise MissingBootloader(
            profile.CHIP_NAME, get_bootloader_path(profile.CHIP_NAME, bootloader_dir)
        )
    return bootloader


def verify_segments(segments):
    """Raise SegmentOverlap unless the segments are sorted and don't overlap"""
    for prev, segment in zip(segments, segments[1:]):
        if segment.offset < prev.offset:
            raise SegmentOverlap(
                f"{segment.name} at {segment.offset:#x} is placed before "
                f"{prev.name} at {prev.offset:#x}."
            )
        if segment.offset < prev.end:
            raise SegmentOverlap(
                f"{prev.name} ({prev.offset:#x}-{prev.end:#x}) overlaps "
                f"{segment.name} at {segment.offset:#x}."
            )


def _check_partition_table(profile, table, table_segment):
    for p in table:
        if p.offset < table_segment.end:
            raise SegmentOverlap(
                f"Partition '{p.name}' at {p.offset:#x} overlaps the partition "
                f"table ({table_segment.offset:#x}-{table_segment.end:#x})."
            )
    if table.app_partition_at(profile.APP_FLASH_OFFSET) is None:
        log.warning(
            f"No app partition starts at {profile.APP_FLASH_OFFSET:#x}, "
            "the application is written there regardless."
        )


def assemble_flash_image(
    elf,
    chip,
    bootloader: bytes | None = None,
    partition_table: PartitionTable | None = None,
    flash_size: str = DEFAULT_FLASH_SIZE,
    flash_mode: str = DEFAULT_FLASH_MODE,
    flash_freq: str = DEFAULT_FLASH_FREQ,
    bootloader_dir: str | None = None,
) -> FlashImage:
    """
    Combine bootloader, partition table and application into the three flash
    segments of the chip.

    Args:
        elf: Application ELF, as an ELFFile, a path, bytes or an opened file.
        chip: Chip name or ChipProfile class.
        bootloader: Explicit bootloader bytes. The chip's default bootloader from
            bootloader_dir is used if not given.
        partition_table: Parsed partition table. The default layout is
            synthesized if not given.
        flash_size: Flash size for image headers and layout checks.
        flash_mode: Flash mode for image headers.
        flash_freq: Flash frequency for image headers.
        bootloader_dir: Directory to look up default bootloaders in.

    Returns:
        FlashImage with the segments at the chip's fixed offsets.
    """
    profile = resolve_chip(chip) if isinstance(chip, str) else chip
    profile.parse_flash_size_arg(flash_size)
    bootloader_offset, table_offset, app_offset = profile.layout()

    bootloader = resolve_bootloader(profile, bootloader, bootloader_dir)
    bootloader = _update_image_flash_params(
        profile, flash_freq, flash_mode, flash_size, bootloader
    )

    if partition_table is None:
        log.print("Using the default partition table.")
        table_segment = FlashSegment(
            table_offset,
            PartitionTable.default(profile, flash_size).to_binary(),
            "partition table",
        )
    else:
        partition_table.verify(flash_size)
        table_segment = FlashSegment(
            table_offset, partition_table.to_binary(), "partition table"
        )
        _check_partition_table(profile, partition_table, table_segment)

    if not isinstance(elf, ELFFile):
        elf = ELFFile.from_source(elf)
    app = build_firmware_image(
        elf,
        profile,
        flash_size=flash_size,
        flash_mode=flash_mode,
        flash_freq=flash_freq,
        max_size=flash_size_bytes(flash_size.split("-")[0]) - app_offset,
    )

    image = FlashImage(
        profile,
        FlashSegment(bootloader_offset, bootloader, "bootloader"),
        table_segment,
        FlashSegment(app_offset, app, "application"),
    )
    verify_segments(image.segments)
    for segment in image:
        log.detail(f"  {segment.offset:#08x} {segment.name}, {len(segment.data)} bytes")
    return image
