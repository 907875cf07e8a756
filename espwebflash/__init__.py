# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

__all__ = [
    "assemble_flash_image",
    "build_firmware_image",
    "export_parts",
    "load_partition_table",
    "prepare_parts",
    "resolve_chip",
    "serve",
    "version",
]

__version__ = "1.0.0"

import logging
import shlex
import sys
import rich_click as click

from espwebflash.assembler import assemble_flash_image
from espwebflash.bin_image import build_firmware_image
from espwebflash.cli_util import AnyIntType, AutoHex2BinType, ChipType, InputFileType
from espwebflash.cmds import export_parts, prepare_parts, version
from espwebflash.config import (
    CONFIG_SECTION,
    get_bool_setting,
    get_float_setting,
    get_int_setting,
    get_setting,
    load_config_file,
)
from espwebflash.logger import forward_logging, log
from espwebflash.partition_table import load_partition_table
from espwebflash.profile import (
    DEFAULT_FLASH_FREQ,
    DEFAULT_FLASH_MODE,
    DEFAULT_FLASH_SIZE,
    FLASH_MODES,
)
from espwebflash.server import (
    DEFAULT_APP_NAME,
    DEFAULT_BROWSER_DELAY,
    DEFAULT_HOST,
    DEFAULT_PORT,
    serve,
)
from espwebflash.targets import CHIP_LIST, resolve_chip
from espwebflash.util import FatalError

# Show arguments in the help output, this was default in argparse
click.rich_click.SHOW_ARGUMENTS = True
# Option group definitions, used for grouping options in the help output
click.rich_click.OPTION_GROUPS = {
    "*": [
        {
            "name": "Image options",
            "options": [
                "--chip",
                "--bootloader",
                "--partition-table",
                "--bootloader-dir",
            ],
        },
        {
            "name": "Flash options",
            "options": [
                "--flash-freq",
                "--flash-mode",
                "--flash-size",
            ],
        },
        {
            "name": "Server options",
            "options": [
                "--host",
                "--port",
                "--no-browser",
                "--export",
            ],
        },
    ],
}


def _print_version(ctx, param, value):
    if not value or ctx.resilient_parsing:
        return
    version()
    ctx.exit()


@click.command(
    no_args_is_help=True,
    context_settings=dict(help_option_names=["-h", "--help"], max_content_width=120),
    help=f"espwebflash v{__version__} - serve an ESP application to the browser "
    "for flashing over Web Serial.",
)
@click.argument("elf", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--chip",
    "-c",
    type=ChipType(CHIP_LIST),
    envvar="ESPWEBFLASH_CHIP",
    required=True,
    help="Target chip type.",
)
@click.option(
    "--bootloader",
    "-b",
    type=AutoHex2BinType(),
    help="Bootloader binary or Intel HEX file. "
    "Default: the chip's bootloader from the bootloader directory.",
)
@click.option(
    "--partition-table",
    "-p",
    type=InputFileType(),
    help="Partition table, binary or CSV. Default: single factory app layout.",
)
@click.option(
    "--bootloader-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Directory with default bootloaders named bootloader_<chip>.bin.",
)
@click.option(
    "--flash-mode",
    "-fm",
    type=click.Choice(list(FLASH_MODES)),
    help=f"SPI flash mode. Default: {DEFAULT_FLASH_MODE}.",
)
@click.option(
    "--flash-freq",
    "-ff",
    help=f"SPI flash frequency. Default: {DEFAULT_FLASH_FREQ}.",
)
@click.option(
    "--flash-size",
    "-fs",
    help=f"SPI flash size. Default: {DEFAULT_FLASH_SIZE}.",
)
@click.option("--host", help=f"Address to listen on. Default: {DEFAULT_HOST}.")
@click.option(
    "--port", type=AnyIntType(), help=f"Port to listen on. Default: {DEFAULT_PORT}."
)
@click.option("--no-browser", is_flag=True, help="Don't open a browser window.")
@click.option(
    "--export",
    "export_dir",
    type=click.Path(file_okay=False),
    help="Write the images and manifest.json to this directory and exit "
    "instead of serving them.",
)
@click.option("--verbose", "-v", is_flag=True, help="Print more diagnostic messages.")
@click.option("--silent", "-s", is_flag=True, help="Only print errors.")
@click.option(
    "--version",
    is_flag=True,
    expose_value=False,
    is_eager=True,
    callback=_print_version,
    help="Print espwebflash version and exit.",
)
def cli(elf, **kwargs):
    if kwargs["verbose"]:
        log.set_verbosity("verbose")
    elif kwargs["silent"]:
        log.set_verbosity("silent")
    log.print(f"espwebflash v{__version__}")
    cfg, _ = load_config_file(verbose=True)
    section = cfg[CONFIG_SECTION]

    def setting(option, default):
        value = kwargs.get(option)
        return value if value is not None else get_setting(section, option, default)

    parts = prepare_parts(
        elf,
        kwargs["chip"],
        bootloader=kwargs["bootloader"],
        partition_table=kwargs["partition_table"],
        flash_size=setting("flash_size", DEFAULT_FLASH_SIZE),
        flash_mode=setting("flash_mode", DEFAULT_FLASH_MODE),
        flash_freq=setting("flash_freq", DEFAULT_FLASH_FREQ),
        bootloader_dir=setting("bootloader_dir", None),
    )
    app_name = get_setting(section, "app_name", DEFAULT_APP_NAME)
    erase = get_bool_setting(section, "erase_before_install", True)

    if kwargs["export_dir"] is not None:
        export_parts(parts, kwargs["export_dir"], app_name, erase)
        return

    port = kwargs["port"]
    if port is None:
        port = get_int_setting(section, "port", DEFAULT_PORT)
    browser_delay = get_float_setting(section, "browser_delay", DEFAULT_BROWSER_DELAY)
    open_browser = not kwargs["no_browser"] and get_bool_setting(
        section, "open_browser", True
    )

    if kwargs["verbose"]:
        forward_logging("espwebflash.server", logging.DEBUG)
    elif kwargs["silent"]:
        forward_logging("espwebflash.server", logging.WARNING)
    else:
        forward_logging("espwebflash.server")

    serve(
        parts,
        host=setting("host", DEFAULT_HOST),
        port=port,
        app_name=app_name,
        erase=erase,
        open_browser=open_browser,
        browser_delay=browser_delay,
    )


def main(argv: list[str] | None = None):
    """
    Main function for espwebflash

    argv - Optional override for default arguments parsing (that uses sys.argv),
    can be a list of custom arguments as strings. Arguments and their values
    need to be added as individual items to the list
    e.g. "--port 8080" thus becomes ['--port', '8080'].
    """
    args = expand_file_arguments(argv or sys.argv[1:])
    cli(args=args, prog_name="espwebflash")


def expand_file_arguments(argv: list[str]) -> list[str]:
    """
    Any argument starting with "@" gets replaced with all values read from a text file.
    Text file arguments can be split by newline or by space.
    Values are added "as-is", as if they were specified in this order
    on the command line.
    """
    new_args = []
    expanded = False
    for arg in argv:
        if arg.startswith("@"):
            expanded = True
            with open(arg[1:], "r") as f:
                for line in f.readlines():
                    new_args += shlex.split(line)
        else:
            new_args.append(arg)
    if expanded:
        log.print(f"espwebflash {' '.join(new_args)}")
        return new_args
    return argv


def _main():
    try:
        main()
    except FatalError as e:
        log.error(f"\nA fatal error occurred: {e}")
        sys.exit(2)
    except OSError as e:
        log.error(f"\nCould not access {e.filename or 'a file'}: {e.strerror or e}")
        sys.exit(1)
    except KeyboardInterrupt:
        log.error("KeyboardInterrupt: Run cancelled by user.")
        sys.exit(2)


if __name__ == "__main__":
    _main()
