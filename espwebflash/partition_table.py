# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import hashlib
import re
import struct
from dataclasses import dataclass

from .logger import log
from .profile import DEFAULT_FLASH_SIZE
from .util import MalformedPartitionTable, flash_size_bytes

MAX_PARTITION_LENGTH = 0xC00  # last 0x400 bytes of the sector are reserved
PARTITION_TABLE_SIZE = 0x1000  # flash sector reserved for the table
MAX_ENTRIES = MAX_PARTITION_LENGTH // 32 - 1  # one slot is kept for the MD5 record

MAGIC_BYTES = b"\xaa\x50"
MD5_PARTITION_BEGIN = b"\xeb\xeb" + b"\xff" * 14
ENTRY_FORMAT = "<2sBBLL16sL"
ENTRY_SIZE = struct.calcsize(ENTRY_FORMAT)

APP_TYPE = 0x00
DATA_TYPE = 0x01

TYPES = {
    "app": APP_TYPE,
    "data": DATA_TYPE,
}

SUBTYPES = {
    APP_TYPE: {
        "factory": 0x00,
        "test": 0x20,
        **{f"ota_{n}": 0x10 + n for n in range(16)},
    },
    DATA_TYPE: {
        "ota": 0x00,
        "phy": 0x01,
        "nvs": 0x02,
        "coredump": 0x03,
        "nvs_keys": 0x04,
        "efuse": 0x05,
        "undefined": 0x06,
        "esphttpd": 0x80,
        "fat": 0x81,
        "spiffs": 0x82,
        "littlefs": 0x83,
    },
}

ALIGNMENT = {
    APP_TYPE: 0x10000,
    DATA_TYPE: 0x1000,
}

FLAGS = {
    "encrypted": 0,
    "readonly": 1,
}

# Default nvs/phy_init/factory layout, the factory app is capped at 0x3F0000
DEFAULT_FACTORY_MAX_SIZE = 0x3F0000


def parse_int(value):
    """Parse a CSV integer field: decimal, 0x hex, or with a K/M suffix"""
    value = value.strip()
    match = re.fullmatch(r"(0x[0-9a-fA-F]+|\d+)\s*([kKmM]?)", value)
    if match is None:
        raise ValueError(f"Invalid number '{value}'")
    number = int(match.group(1), 0)
    suffix = match.group(2).upper()
    if suffix == "K":
        number *= 1024
    elif suffix == "M":
        number *= 1024 * 1024
    return number


@dataclass(frozen=True)
class PartitionDefinition:
    """A single partition table entry"""

    name: str
    type: int
    subtype: int
    offset: int
    size: int
    flags: int = 0

    @property
    def end(self):
        return self.offset + self.size

    @property
    def alignment(self):
        return ALIGNMENT.get(self.type, 0x1000)

    @classmethod
    def from_binary(cls, entry):
        magic, ptype, subtype, offset, size, label, flags = struct.unpack(
            ENTRY_FORMAT, entry
        )
        if magic != MAGIC_BYTES:
            raise MalformedPartitionTable(
                f"Invalid partition entry magic {magic.hex()}"
            )
        raw_name, _, padding = label.partition(b"\x00")
        if padding.strip(b"\x00"):
            raise MalformedPartitionTable(
                f"Partition label {label!r} has data after the NUL terminator"
            )
        try:
            name = raw_name.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPartitionTable(f"Partition label {label!r} is not UTF-8")
        return cls(name, ptype, subtype, offset, size, flags)

    def to_binary(self):
        return struct.pack(
            ENTRY_FORMAT,
            MAGIC_BYTES,
            self.type,
            self.subtype,
            self.offset,
            self.size,
            self.name.encode("utf-8"),
            self.flags,
        )

    def __str__(self):
        type_name = next((k for k, v in TYPES.items() if v == self.type), None)
        subtypes = SUBTYPES.get(self.type, {})
        subtype_name = next(
            (k for k, v in subtypes.items() if v == self.subtype), None
        )
        return "{} {}/{} 0x{:x} 0x{:x}".format(
            self.name,
            type_name or f"0x{self.type:02x}",
            subtype_name or f"0x{self.subtype:02x}",
            self.offset,
            self.size,
        )


class PartitionTable(object):
    """
    An ordered, validated list of partition definitions.

    Build it with from_binary(), from_csv() or from_bytes() (which picks one of
    the two), or default() for the layout used when no table is supplied.
    """

    def __init__(self, entries, has_md5=True):
        self._entries = tuple(entries)
        self.has_md5 = has_md5

    @property
    def entries(self):
        return self._entries

    def __iter__(self):
        return iter(self._entries)

    def __len__(self):
        return len(self._entries)

    def __getitem__(self, item):
        if isinstance(item, str):
            for p in self._entries:
                if p.name == item:
                    return p
            raise KeyError(item)
        return self._entries[item]

    def __eq__(self, other):
        return (
            isinstance(other, PartitionTable)
            and self._entries == other._entries
            and self.has_md5 == other.has_md5
        )

    def __repr__(self):
        return f"PartitionTable({list(self._entries)!r})"

    @classmethod
    def from_bytes(cls, data, flash_size=DEFAULT_FLASH_SIZE, table_offset=0x8000):
        """Parse binary or CSV partition table data"""
        if data[:2] in (MAGIC_BYTES, MD5_PARTITION_BEGIN[:2]):
            return cls.from_binary(data, flash_size)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPartitionTable(
                "Partition table is neither a binary table nor CSV text"
            )
        return cls.from_csv(text, flash_size, table_offset)

    @classmethod
    def from_binary(cls, data, flash_size=DEFAULT_FLASH_SIZE):
        if len(data) != MAX_PARTITION_LENGTH:
            raise MalformedPartitionTable(
                f"Binary partition table must be exactly {MAX_PARTITION_LENGTH:#x} "
                f"bytes, got {len(data):#x}"
            )
        entries = []
        has_md5 = False
        pos = 0
        while pos < len(data):
            chunk = data[pos : pos + ENTRY_SIZE]
            if chunk[:2] == MAGIC_BYTES:
                if len(entries) == MAX_ENTRIES:
                    raise MalformedPartitionTable(
                        f"Partition table has more than {MAX_ENTRIES} entries"
                    )
                entries.append(PartitionDefinition.from_binary(chunk))
                pos += ENTRY_SIZE
            elif chunk[:16] == MD5_PARTITION_BEGIN:
                if hashlib.md5(data[:pos]).digest() != chunk[16:]:
                    raise MalformedPartitionTable("Partition table MD5 mismatch")
                has_md5 = True
                pos += ENTRY_SIZE
                break
            else:
                break
        if data[pos:].strip(b"\xff"):
            raise MalformedPartitionTable(
                f"Unexpected data at offset {pos:#x} of the partition table"
            )
        table = cls(entries, has_md5)
        table.verify(flash_size)
        return table

    @classmethod
    def from_csv(cls, text, flash_size=DEFAULT_FLASH_SIZE, table_offset=0x8000):
        entries = []
        next_offset = table_offset + PARTITION_TABLE_SIZE
        for line_no, line in enumerate(text.splitlines(), start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            fields = [f.strip() for f in line.split(",")]
            fields += [""] * (6 - len(fields))
            try:
                entry = cls._parse_csv_fields(fields, next_offset)
            except (ValueError, KeyError) as e:
                raise MalformedPartitionTable(
                    f"Error at line {line_no} of the partition table CSV: {e}"
                )
            entries.append(entry)
            next_offset = entry.end
        table = cls(entries, has_md5=True)
        table.verify(flash_size)
        return table

    @staticmethod
    def _parse_csv_fields(fields, next_offset):
        name, ptype, subtype, offset, size, flags = fields[:6]
        if not name:
            raise ValueError("missing partition name")
        ptype = TYPES[ptype] if ptype in TYPES else parse_int(ptype)
        subtypes = SUBTYPES.get(ptype, {})
        subtype = subtypes[subtype] if subtype in subtypes else parse_int(subtype)
        if offset:
            offset = parse_int(offset)
        else:
            align = ALIGNMENT.get(ptype, 0x1000)
            offset = (next_offset + align - 1) // align * align
        if not size:
            raise ValueError(f"missing size of partition '{name}'")
        size = parse_int(size)
        flag_value = 0
        for flag in filter(None, (f.strip() for f in flags.split(":"))):
            flag_value |= 1 << FLAGS[flag]
        return PartitionDefinition(name, ptype, subtype, offset, size, flag_value)

    @classmethod
    def default(cls, profile, flash_size=DEFAULT_FLASH_SIZE):
        """Single factory app layout used when no table is supplied"""
        app_offset = profile.APP_FLASH_OFFSET
        app_size = min(
            flash_size_bytes(flash_size) - app_offset, DEFAULT_FACTORY_MAX_SIZE
        )
        data_subtypes = SUBTYPES[DATA_TYPE]
        return cls(
            [
                PartitionDefinition(
                    "nvs", DATA_TYPE, data_subtypes["nvs"], 0x9000, 0x6000
                ),
                PartitionDefinition(
                    "phy_init", DATA_TYPE, data_subtypes["phy"], 0xF000, 0x1000
                ),
                PartitionDefinition(
                    "factory",
                    APP_TYPE,
                    SUBTYPES[APP_TYPE]["factory"],
                    app_offset,
                    app_size,
                ),
            ]
        )

    def verify(self, flash_size=DEFAULT_FLASH_SIZE):
        if not self._entries:
            raise MalformedPartitionTable("Partition table has no entries")
        if len(self._entries) > MAX_ENTRIES:
            raise MalformedPartitionTable(
                f"Partition table has more than {MAX_ENTRIES} entries"
            )
        names = set()
        flash_end = flash_size_bytes(flash_size)
        for p in self._entries:
            if not p.name or len(p.name.encode("utf-8")) > 16:
                raise MalformedPartitionTable(
                    f"Partition name '{p.name}' must be 1 to 16 bytes long"
                )
            if p.name in names:
                raise MalformedPartitionTable(f"Partition name '{p.name}' is not unique")
            names.add(p.name)
            # field widths of the binary entry
            for field, value, limit in (
                ("type", p.type, 0xFF),
                ("subtype", p.subtype, 0xFF),
                ("offset", p.offset, 0xFFFFFFFF),
                ("size", p.size, 0xFFFFFFFF),
                ("flags", p.flags, 0xFFFFFFFF),
            ):
                if not 0 <= value <= limit:
                    raise MalformedPartitionTable(
                        f"Partition '{p.name}' {field} {value:#x} is out of range "
                        f"(0x0-{limit:#x})"
                    )
            if p.size == 0:
                raise MalformedPartitionTable(f"Partition '{p.name}' has zero size")
            if p.offset % p.alignment:
                raise MalformedPartitionTable(
                    f"Partition '{p.name}' offset {p.offset:#x} is not aligned "
                    f"to {p.alignment:#x}"
                )
            if p.end > flash_end:
                raise MalformedPartitionTable(
                    f"Partition '{p.name}' ({p.offset:#x}-{p.end:#x}) exceeds "
                    f"the {flash_size} flash size"
                )

        last = None
        for p in sorted(self._entries, key=lambda p: p.offset):
            if last is not None and p.offset < last.end:
                raise MalformedPartitionTable(
                    f"Partition '{p.name}' at {p.offset:#x} overlaps '{last.name}' "
                    f"({last.offset:#x}-{last.end:#x})"
                )
            last = p

    def app_partition_at(self, offset):
        for p in self._entries:
            if p.type == APP_TYPE and p.offset == offset:
                return p
        return None

    def to_binary(self):
        result = b"".join(p.to_binary() for p in self._entries)
        if self.has_md5:
            result += MD5_PARTITION_BEGIN + hashlib.md5(result).digest()
        if len(result) > MAX_PARTITION_LENGTH:
            raise MalformedPartitionTable(
                f"Binary partition table length ({len(result)}) longer than max"
            )
        return result + b"\xff" * (MAX_PARTITION_LENGTH - len(result))


def load_partition_table(data, flash_size=DEFAULT_FLASH_SIZE, table_offset=0x8000):
    """
    Parse a partition table given as binary or CSV bytes.

    Returns None when no data was supplied, meaning the default layout applies.
    Raises MalformedPartitionTable if the data doesn't describe a valid table.
    """
    if data is None:
        return None
    table = PartitionTable.from_bytes(data, flash_size, table_offset)
    for p in table:
        log.detail(f"  {p}")
    return table
