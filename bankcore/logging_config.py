"""
Structured Logging Module

JSON log lines for ledger, transfer, loan and approval activity. Components
log through ``get_logger("bankcore.<component>")``; ``log_action``
attaches who did what to which resource.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes copied into every JSON line when present
STRUCTURED_FIELDS = ("user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "bankcore",
                  fmt: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Level name, e.g. "DEBUG" or "INFO"
        logger_name: Logger to configure; children inherit its handler
        fmt: "json" for structured lines, "text" for TEXT_FORMAT
        log_file: Append to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "bankcore") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None) -> None:
    """
    Log ``message`` with the acting principal, the action name, the
    affected resource (``"account:<id>"`` style) and any extra data
    attached as record attributes.
    """
    fields = {"user_id": user_id, "action": action, "resource": resource, "extra": extra}
    logger.log(getattr(logging, level.upper()), message,
               extra={name: value for name, value in fields.items() if value})
