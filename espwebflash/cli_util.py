# SPDX-FileCopyrightText: 2025 Espressif Systems (Shanghai) CO LTD
#
# SPDX-License-Identifier: GPL-2.0-or-later


import rich_click as click

from espwebflash.util import intel_hex_to_bin, strip_chip_name
from typing import Any

################################ Custom types #################################


class ChipType(click.Choice):
    """Custom type to accept chip names in any case and with or without hyphen"""

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> Any:
        value = strip_chip_name(value)
        return super().convert(value, param, ctx)


class AnyIntType(click.ParamType):
    """Custom type to parse any integer value - decimal, hex, octal, or binary"""

    name = "integer"

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> int:
        if isinstance(value, int):  # default value is already an int
            return value
        try:
            return arg_auto_int(value)
        except ValueError:
            raise click.BadParameter(f"{value!r} is not a valid integer.")


class AutoHex2BinType(click.Path):
    """Custom type reading an input file, Intel HEX files are converted to binary"""

    def __init__(self, exists=True):
        super().__init__(exists=exists, dir_okay=False)

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> bytes:
        path = super().convert(value, param, ctx)
        try:
            with open(path, "rb") as f:
                return intel_hex_to_bin(f.read())
        except IOError as e:
            raise click.BadParameter(str(e))


class InputFileType(click.Path):
    """Custom type reading an input file as raw bytes"""

    def __init__(self, exists=True):
        super().__init__(exists=exists, dir_okay=False)

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> bytes:
        path = super().convert(value, param, ctx)
        try:
            with open(path, "rb") as f:
                return f.read()
        except IOError as e:
            raise click.BadParameter(str(e))


def arg_auto_int(x: str) -> int:
    return int(x, 0)
