"""Logging configuration for the billing service."""
import logging
import sys
from typing import Optional

from app.config import settings

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("sqlalchemy", "apscheduler", "httpx", "httpcore")


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure logging once for the API process.

    Args:
        level: Level name (DEBUG, INFO, ...). Defaults to settings.LOG_LEVEL.
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
