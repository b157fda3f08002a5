import logging
import os
import sys
from datetime import datetime

from buildbox.core.config import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Colors console records by level."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan + LOG_FORMAT + reset,
        logging.INFO: green + LOG_FORMAT + reset,
        logging.WARNING: yellow + LOG_FORMAT + reset,
        logging.ERROR: red + LOG_FORMAT + reset,
        logging.CRITICAL: bold_red + LOG_FORMAT + reset,
    }

    def format(self, record):
        # Custom levels fall back to the uncolored format
        log_fmt = self.FORMATS.get(record.levelno, LOG_FORMAT)
        formatter = logging.Formatter(log_fmt, datefmt=DATE_FORMAT)
        return formatter.format(record)


def setup_logging(level=LOG_LEVEL, log_dir=LOG_DIR):
    """
    Configure the root logger: colored stderr console plus a daily log file.

    Command output never goes through logging; it is written to the run's
    sinks. An empty ``log_dir`` disables the file handler.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"buildbox_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for logger_name in ["buildbox"]:
        named = logging.getLogger(logger_name)
        named.setLevel(level)
        named.propagate = True
    # SDK transport chatter stays quiet unless explicitly debugging
    for logger_name in ["docker", "urllib3"]:
        logging.getLogger(logger_name).setLevel(max(level, logging.WARNING) if level > logging.DEBUG else level)

    root_logger.info("Logging initialized | level=%s | file=%s", logging.getLevelName(level), bool(log_dir))
