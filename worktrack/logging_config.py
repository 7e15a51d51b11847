"""Logging configuration for worktrack."""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "worktrack"


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure the ``worktrack`` logger.

    Args:
        verbose: If True, show INFO level messages
        debug: If True, show DEBUG level messages with source locations
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers so repeated setup does not duplicate output
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        show_time=debug,
        show_path=debug,
        markup=False,
        rich_tracebacks=debug,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
