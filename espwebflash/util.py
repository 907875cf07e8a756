# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
from __future__ import annotations
import io
import re

from typing import IO, TypeAlias

from intelhex import IntelHex, IntelHexError

# Define a custom type for the input
ImageSource: TypeAlias = str | bytes | IO[bytes]

INTEL_HEX_MAGIC = b":"


def byte(bitstr, index):
    return bitstr[index]


def flash_size_bytes(size):
    """Given a flash size of the type passed in size
    (ie 512KB or 1MB) then return the size in bytes.
    """
    if size is None:
        return None
    try:
        if "MB" in size:
            return int(size[: size.index("MB")]) * 1024 * 1024
        elif "KB" in size:
            return int(size[: size.index("KB")]) * 1024
    except ValueError as e:
        raise FatalError(f"Unknown flash size '{size}': {e}")
    raise FatalError(f"Unknown flash size '{size}'")


def hexify(s, uppercase=True):
    format_str = "%02X" if uppercase else "%02x"
    return "".join(format_str % c for c in s)


def pad_to(data, alignment, pad_character=b"\xff"):
    """Pad to the next alignment boundary"""
    pad_mod = len(data) % alignment
    if pad_mod != 0:
        data += pad_character * (alignment - pad_mod)
    return data


def strip_chip_name(chip_name):
    """Strip chip name to normalized form, e.g. `ESP32-S3` -> `esp32s3`"""
    return re.sub(r"[-()_ ]", "", chip_name.lower())


def get_bytes(input: ImageSource) -> tuple[bytes, str | None]:
    """
    Normalize the input (file path, bytes, or an opened file-like object) into bytes
    and provide a name of the source.

    Args:
        input: The input file path, bytes, or an opened file-like object.

    Returns:
        A tuple containing the normalized bytes and the source of the input.
    """
    if isinstance(input, str):
        with open(input, "rb") as f:
            data = f.read()
            source = input
    elif isinstance(input, (bytes, bytearray)):
        data = bytes(input)
        source = None
    elif hasattr(input, "read") and hasattr(input, "seek"):
        pos = input.tell()
        data = input.read()
        input.seek(pos)  # Reset the file pointer
        source = getattr(input, "name", None)
    else:
        raise FatalError(f"Invalid input type {type(input)}")
    return data, source


def intel_hex_to_bin(data: bytes) -> bytes:
    """
    Convert Intel HEX data to a flat binary starting at the lowest address in the
    file. Data which doesn't parse as Intel HEX is returned unchanged, so raw
    binaries which happen to start with a colon are still accepted.
    """
    if not data.startswith(INTEL_HEX_MAGIC):
        return data
    try:
        text = data.decode("ascii")
        ih = IntelHex()
        ih.loadhex(io.StringIO(text))
    except (IntelHexError, ValueError):
        return data
    if ih.minaddr() is None:
        return data
    return ih.tobinstr(start=ih.minaddr())


class FatalError(RuntimeError):
    """
    Wrapper class for runtime errors that aren't caused by internal bugs, but by
    input content or the environment. Any of these aborts startup.
    """

    def __init__(self, message):
        RuntimeError.__init__(self, message)


class UnsupportedChip(FatalError):
    """Chip identifier outside of the supported set of chip families."""

    def __init__(self, chip_name, supported):
        FatalError.__init__(
            self,
            f"Unsupported chip '{chip_name}' (choose from {', '.join(supported)}).",
        )
        self.chip_name = chip_name


class MalformedPartitionTable(FatalError):
    """Partition table input that can't be parsed or doesn't validate."""

    pass


class InvalidExecutable(FatalError):
    """ELF input that can't be turned into an application image."""

    pass


class MissingBootloader(FatalError):
    def __init__(self, chip_name, searched=None):
        msg = (
            f"No bootloader given and no default bootloader is available "
            f"for {chip_name}."
        )
        if searched:
            msg += f" Looked for '{searched}'."
        FatalError.__init__(self, msg + " Use --bootloader or --bootloader-dir.")


class SegmentOverlap(FatalError):
    """Two flash regions that would be written over each other."""

    pass
