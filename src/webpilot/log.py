from __future__ import annotations

import sys

from loguru import logger

DEFAULT_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", *, json: bool = False) -> None:
    """Route loguru output to stderr at ``level``.

    Library modules only emit records; sinks are configured by the entrypoint.
    """
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
        return
    logger.add(sys.stderr, level=level.upper(), format=DEFAULT_FORMAT)
