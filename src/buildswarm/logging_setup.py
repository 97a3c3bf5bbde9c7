"""
Logging setup for BuildSwarm.

Creates:
- logs/buildswarm_YYYYMMDD_HHMMSS.log (detailed)
- logs/buildswarm_latest.log (symlink to latest)
- Console output (summary)
"""

import logging
import os
from datetime import datetime
from typing import Union

ROOT_LOGGER_NAME = "buildswarm"


def _level(value: Union[int, str]) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    log_dir: str = "logs",
    log_level: Union[int, str] = logging.DEBUG,
    console_level: Union[int, str] = logging.WARNING,
) -> logging.Logger:
    """Configure the package logger with a timestamped file and the console."""
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"buildswarm_{timestamp}.log")

    # File handler - detailed
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(_level(log_level))
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(file_handler)

    # Console handler - summary only
    console_handler = logging.StreamHandler()
    console_handler.setLevel(_level(console_level))
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    # Update "latest" symlink (Unix only)
    latest_link = os.path.join(log_dir, "buildswarm_latest.log")
    try:
        if os.path.islink(latest_link):
            os.unlink(latest_link)
        elif os.path.exists(latest_link):
            os.remove(latest_link)
        os.symlink(os.path.basename(log_file), latest_link)
    except (OSError, NotImplementedError):
        pass  # Windows or permission issues

    logger.info(f"Logging to: {log_file}")
    return logger
