# utils/logging.py - MARKET ORACLE - NAMED LOG CHANNELS - 2026 v1.0
# - Shared named loggers for every layer (core / data / exec / brain)
# - setup_logging(): console + optional file handler, safe to call twice

import logging
import sys
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

log_core = logging.getLogger("market_oracle.core")
log_data = logging.getLogger("market_oracle.data")
log_exec = logging.getLogger("market_oracle.exec")
log_brain = logging.getLogger("market_oracle.brain")

_ROOT_NAME = "market_oracle"
_HANDLER_TAG = "_market_oracle_handler"


def setup_logging(level: Union[int, str] = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger tree.

    Args:
        level: logging level name or number
        log_file: optional path for an extra file handler

    Returns:
        The package root logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger(_ROOT_NAME)
    root.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    has_console = any(getattr(h, _HANDLER_TAG, "") == "console" for h in root.handlers)
    if not has_console:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(level)
        console.setFormatter(formatter)
        setattr(console, _HANDLER_TAG, "console")
        root.addHandler(console)

    if log_file:
        has_file = any(getattr(h, _HANDLER_TAG, "") == f"file:{log_file}" for h in root.handlers)
        if not has_file:
            try:
                fh = logging.FileHandler(log_file)
                fh.setLevel(level)
                fh.setFormatter(formatter)
                setattr(fh, _HANDLER_TAG, f"file:{log_file}")
                root.addHandler(fh)
            except Exception as e:
                root.warning(f"LOG FILE UNAVAILABLE: {log_file} ({e})")

    return root


__all__ = ["log_core", "log_data", "log_exec", "log_brain", "setup_logging"]
