"""
Logging utilities for aliasgraph.

Library modules only ever call ``logging.getLogger(__name__)``; this module
is for applications and scripts that want aliasgraph's messages on screen
or in a file.

Example:
    >>> from aliasgraph.utils import setup_logging
    >>>
    >>> logger = setup_logging('aliasgraph', level=logging.DEBUG)
    >>> net.shared_clone()   # transform summaries now show up at DEBUG
"""

import os
import sys
import logging
from typing import Optional
from datetime import datetime


# ============================================================================
# CONSOLE LOGGING
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter.

    Adds colors to log levels for better readability.
    """

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Color a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        return super().format(record)


def setup_logging(
    name: str = 'aliasgraph',
    log_dir: Optional[str] = None,
    level: int = logging.INFO,
    console: bool = True,
    file: bool = True,
    colored: bool = True
) -> logging.Logger:
    """
    Setup logging configuration.

    Args:
        name: Logger name (``'aliasgraph'`` covers every library module)
        log_dir: Directory for log files
        level: Logging level
        console: Enable console logging
        file: Enable file logging (only if ``log_dir`` is given)
        colored: Use colored console output

    Returns:
        Configured logger

    Example:
        >>> logger = setup_logging('aliasgraph', log_dir='logs')
        >>> logger.info('Converting model to float64')
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Format
    fmt = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
    datefmt = '%Y-%m-%d %H:%M:%S'

    # Console handler
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)

        if colored:
            console_formatter = ColoredFormatter(fmt, datefmt=datefmt)
        else:
            console_formatter = logging.Formatter(fmt, datefmt=datefmt)

        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    # File handler
    if file and log_dir:
        os.makedirs(log_dir, exist_ok=True)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(log_dir, f'{name}_{timestamp}.log')

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(fmt, datefmt=datefmt)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to file: {log_file}")

    return logger


def format_bytes(num_bytes: int) -> str:
    """
    Format a byte count.

    Example:
        >>> format_bytes(1536)
        '1.50 KB'
    """
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{int(size)} B" if unit == 'B' else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"
