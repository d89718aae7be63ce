"""Utility functions for factor gene set enrichment analysis."""

import logging
from pathlib import Path
from typing import Optional, Union

PACKAGE_LOGGER = 'factor_gsea'

FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _remove_package_handlers(logger: logging.Logger):
    """Detach handlers installed by an earlier setup_logging call."""
    for handler in logger.handlers[:]:
        if getattr(handler, '_factor_gsea_handler', False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level: int = logging.INFO) -> logging.Logger:
    """Configure the package logger with a console handler and an optional log file.

    Safe to call repeatedly: handlers from a previous call are replaced, so a
    CLI run followed by library use does not duplicate records. Only the
    ``factor_gsea`` logger is configured; the root logger is left alone.

    Args:
        log_dir: Directory for ``pipeline.log``; no file is written if None
        level: Logging level of the package logger

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    _remove_package_handlers(logger)
    logger.setLevel(level)

    handlers = []
    if log_dir:
        log_file = ensure_dir(log_dir) / 'pipeline.log'
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers.append(console_handler)

    for handler in handlers:
        handler._factor_gsea_handler = True
        logger.addHandler(handler)

    if log_dir:
        logger.debug(f"Writing log file to {log_file}")
    return logger


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create a directory and its parents if needed and return it as a Path."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
