# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

from ..profile import ChipProfile


class ESP8266Profile(ChipProfile):
    """Flash layout of the ESP8266 running an ESP8266_RTOS_SDK application"""

    CHIP_NAME = "ESP8266"
    CHIP_FAMILY = "ESP8266"

    FLASH_SIZES = {
        "512KB": 0x00,
        "256KB": 0x10,
        "1MB": 0x20,
        "2MB": 0x30,
        "4MB": 0x40,
        "2MB-c1": 0x50,
        "4MB-c1": 0x60,
        "8MB": 0x80,
        "16MB": 0x90,
    }

    BOOTLOADER_FLASH_OFFSET = 0x0

    MEMORY_MAP = [
        [0x3FF00000, 0x3FF00010, "DPORT"],
        [0x3FFE8000, 0x40000000, "DRAM"],
        [0x40100000, 0x40108000, "IRAM"],
        [0x40201010, 0x402E1010, "IROM"],
    ]

    @classmethod
    def is_flash_addr(cls, addr):
        return addr > cls.IROM_MAP_START
