"""Loguru sinks for the rlmkit command line and embedding applications."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def default_log_path() -> Path:
    return Path.home() / ".rlmkit" / "rlmkit.log"


def configure_logging(
    level: str = "SUCCESS",
    log_file: Optional[Path] = None,
    verbose: bool = False
) -> None:
    """
    Replace loguru's sinks and turn on rlmkit's log records.

    The ``rlmkit`` namespace is disabled on import, so library code stays
    quiet until the CLI (or an embedding application) calls this.

    Args:
        level: Console threshold (default: SUCCESS, so only failures and results)
        log_file: Where the DEBUG trace of every pipeline run goes
        verbose: Show DEBUG records on the console as well
    """
    logger.remove()
    logger.enable("rlmkit")

    console_level = "DEBUG" if verbose else level
    logger.add(sys.stderr, level=console_level, format=CONSOLE_FORMAT, diagnose=False)

    path = log_file or default_log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(path),
        level="DEBUG",
        format=FILE_FORMAT,
        rotation="5 MB",
        retention=3,
        enqueue=True,
    )

    logger.debug(f"rlmkit logging ready (console={console_level}, file={path})")
