# SPDX-FileCopyrightText: 2025 Espressif Systems (Shanghai) CO LTD
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""
Console output of espwebflash.

Startup (reading the inputs and assembling the image set) prints through the `log`
singleton. The HTTP server logs through the standard logging module, its records are
forwarded to `log` by LogHandler so that --verbose and --silent apply to both.
"""

from abc import ABC, abstractmethod
import logging
import sys
import os

class TemplateLogger(ABC):
    """
    Interface of the espwebflash console logger. A replacement (e.g. for a GUI
    frontend embedding prepare_parts) is installed with log.set_logger().
    """

    @abstractmethod
    def print(self, *args, **kwargs):
        pass

    @abstractmethod
    def note(self, message: str):
        pass

    @abstractmethod
    def warning(self, message: str):
        """Non-fatal input problems, e.g. a bootloader that isn't an image."""
        pass

    @abstractmethod
    def error(self, message: str):
        pass

    @abstractmethod
    def detail(self, message: str):
        """Segment listings, offsets and server request lines."""
        pass

    @abstractmethod
    def stage(self, finish: bool = False):
        pass

    @abstractmethod
    def set_verbosity(self, verbosity: str):
        pass


class FlasherLogger(TemplateLogger):
    """
    Default logger writing to the terminal, colored where supported. The
    preparation of the image set runs as one collapsible stage, only the
    per-segment summary and any warnings remain once it finishes.
    """

    ansi_red: str = ""
    ansi_yellow: str = ""
    ansi_blue: str = ""
    ansi_normal: str = ""
    ansi_line_up: str = ""
    ansi_line_clear: str = ""

    _stage_active: bool = False
    _newline_count: int = 0
    _kept_lines: list[str] = []

    _smart_features: bool = False
    _verbosity: str | None = None
    _print_anyway: bool = False

    def __new__(cls):
        """
        Singleton to ensure only one instance of the logger exists.
        """
        if not hasattr(cls, "instance"):
            cls.instance = super(FlasherLogger, cls).__new__(cls)
            cls.instance.set_verbosity("auto")
        return cls.instance

    @classmethod
    def _del(cls) -> None:
        if hasattr(cls, "instance"):
            del cls.instance

    @classmethod
    def _set_smart_features(cls, override: bool | None = None):
        # Check for smart terminal and color support
        if override is not None:
            cls.instance._smart_features = override
        else:
            is_tty = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
            term_supports_color = os.getenv("TERM", "").lower() in (
                "xterm",
                "xterm-256color",
                "screen",
                "screen-256color",
                "linux",
                "vt100",
            )
            no_color = os.getenv("NO_COLOR", "").strip().lower() in ("1", "true", "yes")
            cls.instance._smart_features = (
                is_tty and term_supports_color and not no_color
            )

        if cls.instance._smart_features:
            cls.instance.ansi_red = "\033[1;31m"
            cls.instance.ansi_yellow = "\033[0;33m"
            cls.instance.ansi_blue = "\033[1;36m"
            cls.instance.ansi_normal = "\033[0m"
            cls.instance.ansi_line_up = "\033[1A"
            cls.instance.ansi_line_clear = "\x1b[2K"
        else:
            cls.instance.ansi_red = ""
            cls.instance.ansi_yellow = ""
            cls.instance.ansi_blue = ""
            cls.instance.ansi_normal = ""
            cls.instance.ansi_line_up = ""
            cls.instance.ansi_line_clear = ""

    def print(self, *args, **kwargs):
        """
        Log a plain message. Count newlines if in a collapsing stage.
        """
        if self._verbosity == "silent" and not self._print_anyway:
            return
        if self._stage_active:
            message = "".join(map(str, args))
            self._newline_count += message.count("\n")
            if kwargs.get("end", "\n") == "\n":
                self._newline_count += 1
        print(*args, **kwargs)
        self._print_anyway = False

    def note(self, message: str):
        """
        Log a Note: message in blue and white.
        """
        formatted_message = f"{self.ansi_blue}Note:{self.ansi_normal} {message}"
        if self._stage_active:
            self._kept_lines.append(formatted_message)
        self.print(formatted_message)

    def warning(self, message: str):
        """
        Log a Warning: message in yellow and white.
        """
        formatted_message = f"{self.ansi_yellow}Warning:{self.ansi_normal} {message}"
        if self._stage_active:
            self._kept_lines.append(formatted_message)
        self.print(formatted_message)

    def error(self, message: str):
        """
        Log an error message in red to stderr.
        """
        formatted_message = f"{self.ansi_red}{message}{self.ansi_normal}"
        self._print_anyway = True
        self.print(formatted_message, file=sys.stderr)

    def detail(self, message: str):
        """
        Log a message (segment listings, offsets) only in verbose mode.
        """
        if self._verbosity == "verbose":
            self.print(message)

    def stage(self, finish: bool = False):
        """
        Start or finish a collapsible stage.
        Any log messages printed between the start and finish will be deleted
        when the stage is successfully finished.
        Warnings and notes will be saved and printed at the end of the stage.
        If terminal doesn't support ANSI escape codes, no collapsing happens.
        """
        if finish:
            if not self._stage_active:
                return
            self._stage_active = False

            if self._smart_features:
                # Delete printed lines
                self.print(
                    f"{self.ansi_line_up}{self.ansi_line_clear}"
                    * (self._newline_count),
                    end="",
                    flush=True,
                )
                for line in self._kept_lines:
                    self.print(line)

            self._kept_lines.clear()
            self._newline_count = 0
        else:
            self._stage_active = True

    def set_logger(self, new_logger):
        self.__class__ = new_logger.__class__

    def set_verbosity(self, verbosity: str):
        """
        Set the verbosity level to one of the following:
        - "auto": Enable smart terminal features and colors if supported by the terminal
        - "verbose": Enable verbose output (no collapsing output, details shown)
        - "silent": Disable all output except errors
        - "compact": Enable smart terminal features and colors even if not supported
        """
        if verbosity == self._verbosity:
            return

        self._verbosity = verbosity
        if verbosity == "auto":
            self._set_smart_features()
        elif verbosity == "verbose":
            self._set_smart_features(override=False)
        elif verbosity == "silent":
            pass
        elif verbosity == "compact":
            self._set_smart_features(override=True)
        else:
            raise ValueError(f"Invalid verbosity level: {verbosity}")


log = FlasherLogger()


class LogHandler(logging.Handler):
    """Forward standard logging records to `log`, mapped by level"""

    def emit(self, record):
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            log.error(message)
        elif record.levelno >= logging.WARNING:
            log.warning(message)
        elif record.levelno >= logging.INFO:
            log.print(message)
        else:
            # request lines and browser errors
            log.detail(message)


def forward_logging(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Route the records of a standard library logger through `log`.
    Calling it again only changes the level.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(h, LogHandler) for h in logger.handlers):
        logger.addHandler(LogHandler())
    logger.setLevel(level)
    return logger
