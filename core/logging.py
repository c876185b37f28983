"""
Logging configuration
"""

import logging
import sys
from typing import Optional

from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Libraries that log every request or job tick at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "apscheduler")


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging to stdout.

    Args:
        level: Overrides LOG_LEVEL (used by the migration CLI's --verbose)
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    logging.getLogger(__name__).info(f"Logging configured at {level_name} level")
