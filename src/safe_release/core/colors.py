"""Console colors for Safe Release status output.

Provides ANSI color codes for terminal output with auto-detection
of TTY support and Windows compatibility.
"""

import logging
import os
import re
import sys


class ConsoleColors:
    """ANSI color codes for terminal output.

    Auto-detects TTY support and handles Windows compatibility.
    Use this class for general CLI output formatting.
    """

    GREEN = "\033[0;32m"
    RED = "\033[0;31m"
    YELLOW = "\033[0;33m"
    BLUE = "\033[0;34m"
    BOLD = "\033[1m"
    DIM = "\033[90m"
    RESET = "\033[0m"
    # Regex to strip ANSI escape codes for visible length calculation
    ANSI_ESCAPE = re.compile(r"\033\[[0-9;]*m")

    # Disable colors if not a TTY or on Windows without ANSI support
    _enabled = sys.stdout.isatty() and (os.name != "nt" or bool(os.environ.get("TERM")))

    @classmethod
    def is_enabled(cls) -> bool:
        """Check if colors are enabled."""
        return cls._enabled

    @classmethod
    def set_enabled(cls, enabled: bool) -> None:
        cls._enabled = enabled

    @classmethod
    def _wrap(cls, color: str, text: str) -> str:
        if cls._enabled:
            return f"{color}{text}{cls.RESET}"
        return text

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green)"""
        return cls._wrap(cls.GREEN, text)

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red)"""
        return cls._wrap(cls.RED, text)

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow)"""
        return cls._wrap(cls.YELLOW, text)

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue)"""
        return cls._wrap(cls.BLUE, text)

    @classmethod
    def bold(cls, text: str) -> str:
        return cls._wrap(cls.BOLD, text)

    @classmethod
    def dim(cls, text: str) -> str:
        return cls._wrap(cls.DIM, text)

    @classmethod
    def strip(cls, text: str) -> str:
        """Remove ANSI escape codes from text."""
        return cls.ANSI_ESCAPE.sub("", text)


# Records logged with extra={"status": "success"} are tagged [SUCCESS] instead of [INFO]
SUCCESS_STATUS = "success"


def format_status_tag(record: logging.LogRecord) -> str:
    """Return the colored bracket tag for a log record.

    Tags mirror the release pipeline's historical output:
    ``[INFO]``, ``[SUCCESS]``, ``[WARNING]``, ``[ERROR]``.
    """
    if getattr(record, "status", None) == SUCCESS_STATUS:
        return ConsoleColors.success("[SUCCESS]")
    if record.levelno >= logging.ERROR:
        return ConsoleColors.error("[ERROR]")
    if record.levelno >= logging.WARNING:
        return ConsoleColors.warning("[WARNING]")
    if record.levelno <= logging.DEBUG:
        return ConsoleColors.dim("[DEBUG]")
    return ConsoleColors.info("[INFO]")
