"""Logging configuration for qrpair."""

import logging
import sys
from pathlib import Path

from qrpair.config import Config

# Module-level logger cache
_logger: logging.Logger | None = None

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(config: Config, console: bool = True) -> logging.Logger:
    """Configure the ``qrpair`` logger from configuration.

    Console output goes to stderr so command output on stdout stays
    machine readable.

    Args:
        config: Configuration object with log settings.
        console: Attach a stderr handler.

    Returns:
        Configured logger instance.
    """
    global _logger

    if _logger is not None:
        return _logger

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logger = logging.getLogger("qrpair")
    logger.setLevel(level)
    logger.handlers.clear()

    # 2025-01-27 10:30:45 [INFO] message
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.propagate = False

    _logger = logger
    return logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is not None:
        for handler in _logger.handlers:
            handler.close()
        _logger.handlers.clear()
        _logger = None
