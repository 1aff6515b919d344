"""
Logging configuration
"""

import logging
import sys
from typing import Optional

from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Per-request lines from the HTTP and SSH clients and APScheduler job bookkeeping
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "paramiko")


def setup_logging(level: Optional[str] = None):
    """
    Configure application logging.

    Args:
        level: Level name overriding LOG_LEVEL (e.g. from a --log-level flag)
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Third-party chatter only shows up when debugging
    quiet_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
