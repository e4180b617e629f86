"""Logging setup for hosts that want feed_engine's default sinks."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: str = "INFO", log_dir: Optional[Union[str, Path]] = None) -> None:
    """
    Replace loguru's default handler with a stderr sink at `level`, plus a daily
    rotated file under `log_dir` when one is given.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT, colorize=True)

    if log_dir is not None:
        logger.add(
            str(Path(log_dir) / "feed_engine_{time:YYYY-MM-DD}.log"),
            rotation="00:00",
            retention="30 days",
            level=level.upper(),
            format=FILE_FORMAT,
        )

    logger.info(f"Logging configured with level: {level.upper()}")
