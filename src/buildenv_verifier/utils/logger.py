"""Logging setup."""

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "WARNING", log_file: Path | None = None) -> None:
    """
    Install the stderr sink and, optionally, a rotating file sink.

    Args:
        level: Minimum level for the stderr sink
        log_file: File receiving DEBUG and above
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5, enqueue=True)
