# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Defaults for the flash and server options, read from an [espwebflash] section.

Every option can also be set with an ESPWEBFLASH_<OPTION> environment variable,
which wins over the file. Command line options win over both.
"""

import configparser
import os

from .logger import log
from .util import FatalError

CONFIG_SECTION = "espwebflash"

CONFIG_OPTIONS = [
    # image set
    "flash_mode",
    "flash_freq",
    "flash_size",
    "bootloader_dir",
    # manifest
    "app_name",
    "erase_before_install",
    # server
    "host",
    "port",
    "open_browser",
    "browser_delay",
]

# Candidates in each searched directory, first match wins
CONFIG_FILE_NAMES = ("espwebflash.cfg", "setup.cfg", "tox.ini")


def _validate_config_file(file_path, verbose=False):
    if not os.path.exists(file_path):
        return False

    cfg = configparser.RawConfigParser()
    try:
        cfg.read(file_path, encoding="UTF-8")
        # setup.cfg and tox.ini only count if they hold an [espwebflash] section
        if cfg.has_section(CONFIG_SECTION):
            if verbose:
                unknown_opts = sorted(
                    set(cfg.options(CONFIG_SECTION)) - set(CONFIG_OPTIONS)
                )
                if unknown_opts:
                    suffix = "s" if len(unknown_opts) > 1 else ""
                    log.note(
                        f"Ignoring unknown config file option{suffix}: "
                        f"{', '.join(unknown_opts)}"
                    )
            return True
    except (UnicodeDecodeError, configparser.Error) as e:
        if verbose:
            log.note(f"Ignoring invalid config file {file_path}: {e}")
    return False


def _find_config_file(dir_path, verbose=False):
    for candidate in CONFIG_FILE_NAMES:
        cfg_path = os.path.join(dir_path, candidate)
        if _validate_config_file(cfg_path, verbose):
            return cfg_path
    return None


def load_config_file(verbose=False):
    """
    Find and read the configuration file.

    ESPWEBFLASH_CFGFILE names the file explicitly. Otherwise the current directory,
    the per-user config directory and the home directory are searched, in that order.

    Returns:
        (ConfigParser with at least an empty [espwebflash] section, path or None)
    """
    set_with_env_var = False
    cfg_file_path = None
    env_var_path = os.environ.get("ESPWEBFLASH_CFGFILE")
    if env_var_path is not None and _validate_config_file(env_var_path):
        cfg_file_path = env_var_path
        set_with_env_var = True
    else:
        home_dir = os.path.expanduser("~")
        os_config_dir = (
            f"{home_dir}/.config/espwebflash"
            if os.name == "posix"
            else f"{home_dir}/AppData/Local/espwebflash/"
        )
        for dir_path in (os.getcwd(), os_config_dir, home_dir):
            cfg_file_path = _find_config_file(dir_path, verbose)
            if cfg_file_path:
                break

    cfg = configparser.ConfigParser()
    cfg[CONFIG_SECTION] = {}

    if cfg_file_path is not None:
        cfg.read(cfg_file_path)
        if verbose:
            msg = " (set with ESPWEBFLASH_CFGFILE)" if set_with_env_var else ""
            log.print(
                f"Loaded custom configuration from "
                f"{os.path.abspath(cfg_file_path)}{msg}"
            )
    return cfg, cfg_file_path


def get_setting(section, option, fallback=None):
    """
    Look up a setting: the ESPWEBFLASH_<OPTION> environment variable wins over
    the config file section, which wins over the fallback.
    """
    env_value = os.environ.get(f"ESPWEBFLASH_{option.upper()}")
    if env_value is not None:
        return env_value
    return section.get(option, fallback)


def get_bool_setting(section, option, fallback=False):
    value = get_setting(section, option, None)
    if value is None:
        return fallback
    try:
        return configparser.ConfigParser.BOOLEAN_STATES[str(value).lower()]
    except KeyError:
        log.warning(
            f"Invalid boolean value '{value}' for option '{option}', "
            f"using default ({fallback})."
        )
        return fallback


def get_int_setting(section, option, fallback):
    """Integer setting, 0x prefixed hex is accepted like on the command line"""
    value = get_setting(section, option, None)
    if value is None:
        return fallback
    try:
        return int(str(value), 0)
    except ValueError:
        raise FatalError(
            f"Invalid value '{value}' for option '{option}', expected an integer"
        )


def get_float_setting(section, option, fallback):
    value = get_setting(section, option, None)
    if value is None:
        return fallback
    try:
        return float(value)
    except ValueError:
        raise FatalError(
            f"Invalid value '{value}' for option '{option}', expected a number"
        )
