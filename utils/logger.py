"""
Logging configuration for the application.
"""
import logging
import os
import sys
from pathlib import Path
from typing import Optional


def _resolve_level(level: Optional[int]) -> int:
    """Pick the explicit level, else LOG_LEVEL from the environment, else INFO."""
    if level is not None:
        return level
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(name: str = "sitegraph", level: Optional[int] = None) -> logging.Logger:
    """
    Set up and configure a logger for the application.

    Args:
        name: Logger name
        level: Logging level (defaults to the LOG_LEVEL environment variable)

    Returns:
        Configured logger instance
    """
    level = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    # Console handler with formatted output
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)

    # Optional file handler
    log_dir = os.environ.get("SITEGRAPH_LOG_DIR")
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(
            log_path / "sitegraph.log",
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)

        logger.addHandler(file_handler)

    return logger


def set_level(level: int) -> None:
    """Apply a level to every logger configured by setup_logger."""
    for logger in logging.Logger.manager.loggerDict.values():
        if isinstance(logger, logging.Logger) and logger.handlers:
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)
