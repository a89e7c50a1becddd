#!/usr/bin/env python3
"""
Logging configuration utilities.
"""
import logging
import os
import sys

from config.settings import LOG_DIR


class FlushFileHandler(logging.FileHandler):
    """File handler that flushes after each log record."""
    def emit(self, record):
        super().emit(record)
        self.flush()


def setup_logging(log_file: str, level: int = logging.INFO, name: str = None, include_default_filters: bool = False) -> logging.Logger:
    """
    Set up logging configuration with both file and console handlers.

    Args:
        log_file: Log file name (relative names are placed under LOG_DIR)
        level: Logging level
        name: Logger name, defaults to the log file stem

    Returns:
        Configured logger
    """
    if not os.path.isabs(log_file):
        log_file = os.path.join(LOG_DIR, log_file)

    # Create handlers
    stream_handler = logging.StreamHandler(sys.stdout)
    file_handler = FlushFileHandler(log_file)

    # Set consistent formatter
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    stream_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    # Apply to root logger
    logging.basicConfig(level=level, handlers=[stream_handler, file_handler])

    logger = logging.getLogger(name or os.path.splitext(os.path.basename(log_file))[0])
    # Later callers still get their own file even though basicConfig only runs once
    if not any(isinstance(h, FlushFileHandler) and h.baseFilename == file_handler.baseFilename for h in logger.handlers + logging.getLogger().handlers):
        logger.addHandler(file_handler)
    else:
        file_handler.close()
    logger.setLevel(level)

    if include_default_filters:
        setup_image_logging()

    return logger


class SuppressDecompressionWarnings(logging.Filter):
    """Filter to suppress decompression bomb warnings from Pillow on large scans."""
    def filter(self, record):
        return "DecompressionBombWarning" not in record.getMessage()


def setup_image_logging():
    """Set up image-specific logging filters."""
    logging.getLogger("PIL.Image").addFilter(SuppressDecompressionWarnings())
    logging.getLogger("PIL.PngImagePlugin").setLevel(logging.WARNING)
