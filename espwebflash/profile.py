# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os

from .logger import log
from .util import FatalError, intel_hex_to_bin, strip_chip_name

BOOTLOADERS_DIR = os.path.join(os.path.dirname(__file__), "targets", "bootloaders")

# Flash size used for the image header and layout checks. Not derived from the
# ELF; override through the flash_size config option or --flash-size.
DEFAULT_FLASH_SIZE = "4MB"
DEFAULT_FLASH_MODE = "dio"
DEFAULT_FLASH_FREQ = "40m"

FLASH_MODES = {
    "qio": 0,
    "qout": 1,
    "dio": 2,
    "dout": 3,
}

# ELF e_machine values
EM_XTENSA = 0x5E
EM_RISCV = 0xF3


def get_bootloader_path(chip_name, bootloader_dir=None):
    chip_name = strip_chip_name(chip_name)
    return os.path.join(
        bootloader_dir or BOOTLOADERS_DIR, f"bootloader_{chip_name}.bin"
    )


class ChipProfile(object):
    """Flash layout and image format constants of one chip family.

    Don't instantiate this base class directly, resolve a subclass from
    its chip name with targets.resolve_chip().
    """

    CHIP_NAME = "Espressif device"
    # Name used by esp-web-tools in the manifest 'chipFamily' field
    CHIP_FAMILY = None

    # First byte of the application image
    ESP_IMAGE_MAGIC = 0xE9

    # Initial state for the checksum routine
    ESP_CHECKSUM_MAGIC = 0xEF

    # Expected e_machine of application ELF files
    ELF_MACHINE = EM_XTENSA

    IROM_MAP_START = 0x40200000
    IROM_MAP_END = 0x40300000

    # Flash offsets of the three images written by the web flasher
    BOOTLOADER_FLASH_OFFSET = 0x0
    PARTITION_TABLE_OFFSET = 0x8000
    APP_FLASH_OFFSET = 0x10000

    FLASH_SIZES = {
        "1MB": 0x00,
        "2MB": 0x10,
        "4MB": 0x20,
        "8MB": 0x30,
        "16MB": 0x40,
    }

    FLASH_FREQUENCY = {
        "80m": 0xF,
        "40m": 0x0,
        "26m": 0x1,
        "20m": 0x2,
    }

    MEMORY_MAP = []

    # Image class used to build applications, set in bin_image
    FIRMWARE_IMAGE = None
    # Image class used to inspect bootloader images, set in bin_image
    BOOTLOADER_IMAGE = None

    @staticmethod
    def checksum(data, state=ESP_CHECKSUM_MAGIC):
        """Calculate checksum of a blob, as it is defined by the ROM"""
        for b in data:
            state ^= b

        return state

    @classmethod
    def parse_flash_size_arg(cls, arg):
        try:
            return cls.FLASH_SIZES[arg]
        except KeyError:
            raise FatalError(
                "Flash size '%s' is not supported by this chip type. "
                "Supported sizes: %s" % (arg, ", ".join(cls.FLASH_SIZES.keys()))
            )

    @classmethod
    def parse_flash_freq_arg(cls, arg):
        if arg is None:
            # The encoding of the default flash frequency in FLASH_FREQUENCY is always 0
            return 0
        try:
            return cls.FLASH_FREQUENCY[arg]
        except KeyError:
            raise FatalError(
                "Flash frequency '%s' is not supported by this chip type. "
                "Supported frequencies: %s"
                % (arg, ", ".join(cls.FLASH_FREQUENCY.keys()))
            )

    @staticmethod
    def parse_flash_mode_arg(arg):
        try:
            return FLASH_MODES[arg]
        except KeyError:
            raise FatalError(
                "Flash mode '%s' is not supported. Supported modes: %s"
                % (arg, ", ".join(FLASH_MODES.keys()))
            )

    @classmethod
    def default_bootloader(cls, bootloader_dir=None):
        """
        Return the bundled bootloader for this chip family, or None if
        there is no bootloader_<chip>.bin in the bootloader directory.
        """
        path = get_bootloader_path(cls.CHIP_NAME, bootloader_dir)
        if not os.path.isfile(path):
            log.detail(f"No default bootloader at {path}")
            return None
        with open(path, "rb") as f:
            data = f.read()
        log.print(f"Using default {cls.CHIP_NAME} bootloader from {path}")
        return intel_hex_to_bin(data)

    @classmethod
    def layout(cls):
        """Return the (bootloader, partition table, app) flash offsets"""
        return (
            cls.BOOTLOADER_FLASH_OFFSET,
            cls.PARTITION_TABLE_OFFSET,
            cls.APP_FLASH_OFFSET,
        )

    @classmethod
    def is_flash_addr(cls, addr):
        return cls.IROM_MAP_START <= addr < cls.IROM_MAP_END
