import logging
import os
import re
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler

from tqdm import tqdm

from poolchain.utils import format_duration

# Color mapping for console output
LOG_COLORS = {
    "DEBUG": "\033[92m",  # Green
    "INFO": "\033[94m",  # Blue
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",  # Red
    "CRITICAL": "\033[95m",  # Magenta
    "ELAPSED": "\033[96m",  # Cyan
    "ENDC": "\033[0m",  # Reset
}

DEFAULT_LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_ANSI = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")


def _paint(text, key):
    return f"{LOG_COLORS[key]}{text}{LOG_COLORS['ENDC']}"


def strip_ansi(text):
    """Remove ANSI escape codes from `text`."""
    return _ANSI.sub("", text)


class ColoredFormatter(logging.Formatter):
    """
    Console formatter: level-colored message, then the time since the run started,
    aligned at column `width`.
    """

    def __init__(self, fmt=LOG_FORMAT, datefmt=None, width=150):
        super().__init__(fmt, datefmt)
        self.started = datetime.now()
        self.width = width

    def format(self, record):
        level_key = record.levelname if record.levelname in LOG_COLORS else "INFO"
        line = " - ".join((
            _paint(self.formatTime(record, self.datefmt), "DEBUG"),
            _paint(record.name, "WARNING"),
            _paint(record.levelname, level_key),
            _paint(record.getMessage(), level_key),
        ))
        elapsed = (datetime.now() - self.started).total_seconds()
        pad = " " * max(0, self.width - len(strip_ansi(line)))
        return f"{line}{pad}{_paint(f'⏱ {format_duration(elapsed)}', 'ELAPSED')}"


class TqdmLoggingHandler(logging.StreamHandler):
    """Console handler that writes through tqdm so progress bars stay intact."""

    def emit(self, record):
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logger(
        name="poolchain",
        log_file=None,
        level=logging.DEBUG,
        log_dir=DEFAULT_LOG_DIR,
        rotate=True,
        max_bytes=2 * 1024 * 1024,
        backup_count=5,
        file_logging=True,
        console_level=logging.INFO,
):
    """
    Setup a logger with colored console output and file logging.

    Only the main process configures handlers; stage workers log through the
    inherited module loggers.

    :param name: logger name
    :param log_file: explicit log file path; defaults to `<log_dir>/<name>_<YYYYMMDD>.log`
    :param level: logger and file handler level
    :param log_dir: directory for log files, created if missing
    :param rotate: use a size-rotated file handler
    :param max_bytes: rotation threshold
    :param backup_count: number of rotated files to keep
    :param file_logging: write a log file at all
    :param console_level: console handler level, never below `level`
    :return: logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.hasHandlers():
        logger.handlers.clear()

    if file_logging:
        os.makedirs(log_dir, exist_ok=True)
        if log_file is None:
            log_file = os.path.join(log_dir, f"{name}_{datetime.now():%Y%m%d}.log")
        if rotate:
            file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        else:
            file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    stream_handler = TqdmLoggingHandler(sys.stdout)
    stream_handler.setFormatter(ColoredFormatter())
    stream_handler.setLevel(max(level, console_level))
    logger.addHandler(stream_handler)

    # Prevent double logging via root handlers
    logger.propagate = False
    return logger
