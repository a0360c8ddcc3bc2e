"""
Logging setup shared by the HTTP service and the pipeline CLI.

Console output goes to stderr. It is coloured by level only when stderr is
a terminal, so CI job logs stay free of escape codes. When LOG_DIR is set,
records are also written to a daily file named <prefix>_<YYYYMMDD>.log.
"""
import logging
import sys
import os
from datetime import datetime
from typing import Iterable, Union

from valencloud.core.config import LOG_DIR

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# uvicorn configures its own loggers; route them through the root handlers
DEFAULT_LOGGERS = ("valencloud", "uvicorn", "uvicorn.error", "uvicorn.access", "main")


class ColoredFormatter(logging.Formatter):
    """Colours each record by level; one formatter per level, built once."""

    COLORS = {
        logging.DEBUG: "\x1b[36m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def __init__(self, fmt: str = LOG_FORMAT, datefmt: str = DATE_FORMAT):
        super().__init__(fmt, datefmt=datefmt)
        self._by_level = {
            level: logging.Formatter(color + fmt + self.RESET, datefmt=datefmt)
            for level, color in self.COLORS.items()
        }

    def format(self, record):
        formatter = self._by_level.get(record.levelno)
        if formatter is None:
            return super().format(record)
        return formatter.format(record)


def _console_formatter(stream) -> logging.Formatter:
    isatty = getattr(stream, "isatty", None)
    if isatty is not None and isatty():
        return ColoredFormatter()
    return logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: str = LOG_DIR,
    prefix: str = "valencloud",
    loggers: Iterable[str] = DEFAULT_LOGGERS,
    stream=None,
):
    """Install console (and optional daily file) handlers on the root logger."""
    level = _resolve_level(level)
    stream = sys.stderr if stream is None else stream
    root_logger = logging.getLogger()

    # Re-running replaces handlers instead of stacking them
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(_console_formatter(stream))
    root_logger.addHandler(console_handler)

    log_file = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, f"{prefix}_{datetime.now().strftime('%Y%m%d')}.log")
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for logger_name in loggers:
        named = logging.getLogger(logger_name)
        named.setLevel(level)
        named.propagate = True

    root_logger.info(
        "Logging initialized | level=%s | file=%s",
        logging.getLevelName(level), log_file or "none",
    )
    return log_file
