import logging
import math
from argparse import ArgumentParser
from typing import Final


def get_log_level(level_name: str) -> int:
    """
    Returns a logging level, based on the given name, defaulting to INFO
    for anything not recognized
    """
    levels = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warn": logging.WARNING,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
    }
    level = levels.get(level_name.lower())
    if level is None:
        level = logging.INFO
    return level


def coerce_to_bool(value) -> bool:
    """
    Given a thing, try hard to convert it from something which looks boolean
    like, but it actually a string or something, to a boolean
    """
    if not isinstance(value, bool):
        if isinstance(value, str):
            return value.lower() in {"true", "1", "yes"}
        else:
            raise TypeError(type(value))
    return value


def common_args(description: str) -> ArgumentParser:
    """
    Constructs an ArgumentParser with the overrides accepted by the webhook
    entry point.  Anything not given falls back to the environment.
    """
    parser = ArgumentParser(
        description=description,
    )

    # Where the HTTP server listens, e.g. ":8888" or "127.0.0.1:9000"
    parser.add_argument(
        "--address",
        default=None,
        help="The address the webhook HTTP server listens on",
    )

    # host:port of the registry which sends the notifications
    parser.add_argument(
        "--registry",
        default=None,
        help="The address of the container registry",
    )

    # Allows configuration of log level for debugging
    parser.add_argument(
        "--loglevel",
        default=None,
        help="Configures the logging level",
    )

    return parser


def bytes_to_human_readable(size_bytes: int | float, precision: int = 2) -> str:
    """
    Converts a size in bytes to a human-readable string (e.g., 1024 -> 1.00 KiB).

    Args:
        size_bytes: The size in bytes (int or float).
        precision: The number of decimal places for the result.

    Returns:
        A string representing the size in a human-readable format.
    """
    if size_bytes < 0:
        return "Invalid size"
    if size_bytes == 0:
        return "0 Bytes"

    UNITS: Final[list[str]] = ["Bytes", "KiB", "MiB", "GiB", "TiB"]
    BASE: Final[int] = 1024

    # Each unit is another 2^10
    unit_index: int = min(math.floor(math.log2(size_bytes) / 10), len(UNITS) - 1)

    converted_size: float = size_bytes / (BASE**unit_index)
    return f"{converted_size:.{precision}f} {UNITS[unit_index]}"
