"""
Logging configuration for ember.
"""
import logging
import sys
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'        # Reset
    }

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        reset = self.COLORS['RESET']
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{reset}"
        return super().format(record)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None,
                  console: bool = False) -> None:
    """Setup logging configuration for ember.

    The interactive UI owns the screen, so by default records only go to
    the log file. Console output is for non-interactive commands.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        console: Also log to stderr with colors
    """
    logger = logging.getLogger('ember')
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    # Clear existing handlers
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_formatter = ColoredFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            print(f"Warning: Could not open log file {log_file}: {e}", file=sys.stderr)
        else:
            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
            )
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())


def set_debug(enabled: bool) -> None:
    """Switch the ember logger between DEBUG and INFO at runtime."""
    logging.getLogger('ember').setLevel(logging.DEBUG if enabled else logging.INFO)


def is_debug() -> bool:
    return logging.getLogger('ember').isEnabledFor(logging.DEBUG)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module.

    Args:
        name: Module name

    Returns:
        Logger instance
    """
    return logging.getLogger(f'ember.{name}')


# Custom exceptions for better error handling
class EmberError(Exception):
    """Base exception for ember."""
    pass


class CatalogError(EmberError):
    """Remote catalog request errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CatalogAuthError(CatalogError):
    """The server rejected the credentials or token."""
    pass


class PlayerError(EmberError):
    """Video playback related errors."""
    pass


class PlayerNotFoundError(PlayerError):
    """No player binary could be located."""
    pass


class ConfigurationError(EmberError):
    """Configuration related errors."""
    pass


class StorageError(EmberError):
    """Local persistence errors."""
    pass
