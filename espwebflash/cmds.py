# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os

from .assembler import PartsData, assemble_flash_image
from .bin_image import ELFFile
from .logger import log
from .partition_table import load_partition_table
from .profile import DEFAULT_FLASH_FREQ, DEFAULT_FLASH_MODE, DEFAULT_FLASH_SIZE
from .server import DEFAULT_APP_NAME, manifest_json
from .targets import resolve_chip
from .util import ImageSource, get_bytes, intel_hex_to_bin


def _read_input(input: ImageSource | None, hex_aware=True) -> bytes | None:
    """Read a path or opened file. Bytes were read by the caller and are kept as-is."""
    if input is None:
        return None
    if isinstance(input, (bytes, bytearray)):
        return bytes(input)
    data, _ = get_bytes(input)
    return intel_hex_to_bin(data) if hex_aware else data


def prepare_parts(
    elf: ImageSource,
    chip: str,
    bootloader: ImageSource | None = None,
    partition_table: ImageSource | None = None,
    flash_size: str = DEFAULT_FLASH_SIZE,
    flash_mode: str = DEFAULT_FLASH_MODE,
    flash_freq: str = DEFAULT_FLASH_FREQ,
    bootloader_dir: str | None = None,
) -> PartsData:
    """
    Read the inputs and assemble the image set served to the browser.

    Args:
        elf: Application ELF file path, bytes, or an opened binary file.
        chip: Target chip name.
        bootloader: Optional bootloader. Paths and opened files may hold a raw
            binary or Intel HEX, bytes are used as given.
        partition_table: Optional partition table, binary or CSV.
        flash_size: Flash size of the target.
        flash_mode: Flash mode of the target.
        flash_freq: Flash frequency of the target.
        bootloader_dir: Directory to look up default bootloaders in.

    Returns:
        The immutable PartsData snapshot.
    """
    profile = resolve_chip(chip)
    profile.parse_flash_size_arg(flash_size)
    log.print(f"Preparing image set for {profile.CHIP_NAME}...")
    log.stage()
    elf_data, elf_name = get_bytes(elf)
    elf_file = ELFFile(elf_data, elf_name)
    table = load_partition_table(
        _read_input(partition_table, hex_aware=False),
        flash_size,
        profile.PARTITION_TABLE_OFFSET,
    )
    image = assemble_flash_image(
        elf_file,
        profile,
        bootloader=_read_input(bootloader),
        partition_table=table,
        flash_size=flash_size,
        flash_mode=flash_mode,
        flash_freq=flash_freq,
        bootloader_dir=bootloader_dir,
    )
    log.stage(finish=True)
    for segment in image:
        log.print(
            f"{segment.name.capitalize()}: {len(segment.data)} bytes "
            f"at {segment.offset:#010x}"
        )
    return PartsData.from_image(image)


def export_parts(
    parts: PartsData,
    output_dir: str,
    app_name: str = DEFAULT_APP_NAME,
    erase: bool = True,
) -> list[str]:
    """
    Write the image set and its manifest to a directory, for static hosting.
    Returns the list of written files.
    """
    os.makedirs(output_dir, exist_ok=True)
    written = []
    for name, _, data in parts.assets():
        path = os.path.join(output_dir, name)
        with open(path, "wb") as f:
            f.write(data)
        written.append(path)
    path = os.path.join(output_dir, "manifest.json")
    with open(path, "wb") as f:
        f.write(manifest_json(parts, app_name, erase))
    written.append(path)
    log.print(f"Wrote {len(written)} files to {os.path.abspath(output_dir)}")
    return written


def version():
    from . import __version__

    log.print(__version__)
