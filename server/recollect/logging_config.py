"""Logging configuration."""

import logging
from typing import Optional

from recollect import config


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger for the API process."""
    level = level or config.LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
