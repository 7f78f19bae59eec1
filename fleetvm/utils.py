"""Shared utility functions."""

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("fleetvm")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    An optional prefix tags every line with the instance it came from.
    """

    def __init__(self, prefix: str = "") -> None:
        self._buf = ""
        self._prefix = prefix

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            line = line.rstrip("\r")
            if line.strip():
                logger.info(f"{self._prefix}{line}")

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(f"{self._prefix}{self._buf.rstrip()}")
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("boto3", logging.INFO, True),
        ("botocore", logging.WARNING, True),
        ("urllib3", logging.WARNING, True),
        ("paramiko", logging.WARNING, True),
        ("fabric", logging.WARNING, True),
        ("invoke", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def get_ssh_user(image_family: str) -> str:
    """Get the default remote admin user for an image family.

    :param image_family: Image family name (ubuntu, debian, amazon-linux, ...)
    :return: SSH username (root when the family is unknown)
    """
    return {
        "ubuntu": "ubuntu",
        "debian": "admin",
        "amazon-linux": "ec2-user",
    }.get(image_family, "root")
