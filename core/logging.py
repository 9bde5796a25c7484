"""
Logging configuration

Engine modules log through `logging.getLogger(__name__)` and attach
structured failure details as `extra={"error_context": ...}`. The formatter
installed here appends that context to the log line.
"""

import json
import logging
import sys
from typing import Optional

from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx")


class ErrorContextFormatter(logging.Formatter):
    """Appends a record's `error_context` extra as compact JSON"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "error_context", None)
        if context:
            line = f"{line} | context={json.dumps(context, default=str, sort_keys=True)}"
        return line


def setup_logging(level: Optional[str] = None):
    """Configure application logging; `level` overrides settings.LOG_LEVEL"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ErrorContextFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logging.basicConfig(level=log_level, handlers=[handler])

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
