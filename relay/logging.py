"""
Logging for the relay daemon and CLI.

Everything logs under the ``relay`` namespace. The console gets timestamped,
level-colored lines; ``--log-file`` adds an uncolored copy with source line
numbers for post-mortems of unattended runs.
"""

import logging
import sys
from typing import Optional

ROOT_LOGGER_NAME = "relay"

# HTTP connection chatter from the chat client's transport.
QUIET_LOGGERS = ("urllib3",)


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BG_RED = "\033[41m"


class ColoredFormatter(logging.Formatter):
    """
    Formatter that wraps the level name in an ANSI color.

    The record is restored after formatting, so a file handler sharing the
    record still writes the plain level name.
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DIM + Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.BG_RED + Colors.WHITE,
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        if color is None:
            return super().format(record)

        plain = record.levelname
        record.levelname = f"{color}{plain}{Colors.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    # Logger names only help when reading DEBUG output.
    if level <= logging.DEBUG:
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    else:
        fmt = "%(asctime)s [%(levelname)s] %(message)s"
    handler.setFormatter(ColoredFormatter(fmt, datefmt="%H:%M:%S"))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        ColoredFormatter(
            "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
            use_colors=False,
        )
    )
    return handler


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Install the console handler (and optionally a file handler) on the
    ``relay`` logger, replacing whatever a previous call installed.

    Unknown level names fall back to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    relay_logger = logging.getLogger(ROOT_LOGGER_NAME)
    relay_logger.setLevel(numeric_level)
    relay_logger.handlers.clear()
    relay_logger.addHandler(_console_handler(numeric_level))
    if log_file:
        relay_logger.addHandler(_file_handler(log_file, numeric_level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return ``name``'s logger, moved under the ``relay`` namespace if needed."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def format_exception_summary(
    error: BaseException,
    *,
    max_length: int = 180,
) -> str:
    """
    Render ``error`` as ``"ClassName: message"`` on a single line.

    Whitespace runs (newlines included) collapse to one space, and the result
    is cut to ``max_length`` characters with a trailing ``...``. This is what
    heartbeat status rows show as ``last_error``.
    """
    detail = " ".join(str(error or "").split())
    summary = type(error).__name__
    if detail:
        summary = f"{summary}: {detail}"
    if max_length > 3 and len(summary) > max_length:
        return summary[: max_length - 3].rstrip() + "..."
    return summary


def configure_logging_from_args(verbose: bool = False, log_level: Optional[str] = None,
                                log_file: Optional[str] = None) -> None:
    """Map ``--verbose``/``--log-level``/``--log-file`` onto ``setup_logging``.

    An explicit ``--log-level`` wins over ``--verbose``.
    """
    if log_level:
        level = log_level.upper()
    else:
        level = "DEBUG" if verbose else "INFO"
    setup_logging(level=level, log_file=log_file)
