"""Logging setup shared by the API process and the background sweeper.

JSON lines in production (one object per record, easy to ship to a log
aggregator), plain text for local development.
"""
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# record attributes promoted to top-level JSON keys when passed via `extra`
CONTEXT_FIELDS = ("user_id", "session_id", "group_id", "week", "count", "duration_seconds")


class JSONFormatter(logging.Formatter):
    """Format a LogRecord as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_obj[attr] = getattr(record, attr)

        return json.dumps(log_obj, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json", logger_name: Optional[str] = None) -> logging.Logger:
    """Configure the root (or named) logger with a stdout handler.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        fmt: "json" for structured output, anything else for plain text
        logger_name: Logger to configure (root logger if None)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    logger.addHandler(handler)

    # motor/pymongo heartbeat chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
