"""Structured logging for the checkout service.

Log records are emitted as one JSON object per line on stdout and,
when a log directory is configured, to a rotating file as well.
Callers attach context with ``extra={"extra": {...}}``; those keys are
merged into the top level of the record.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in ("checkout_id", "user_id", "order_id"):
            if hasattr(record, field):
                log_record[field] = getattr(record, field)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            log_record.update(extra)
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(level: str = "INFO", log_dir: str = "") -> None:
    """Configure the root logger with JSON output.

    Args:
        level: Name of the level for the root logger.
        log_dir: Directory for ``checkout_service.log``; empty means
            console only. Created if missing.
    """
    logger = logging.getLogger()
    logger.setLevel(level)
    # Remove any default handlers (e.g. from basicConfig or uvicorn reloads)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "checkout_service.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB per log file
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
