"""
Logging setup for the service and the CLI.

Modules log through logging.getLogger(__name__) and prefix run-scoped
messages with "[<run_id>]". The JSON formatter lifts that prefix into its
own field so runs can be filtered in a log aggregator.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# "[ingestion-...] message" or "[conversation-...] message"
_RUN_PREFIX = re.compile(r"^\[(?P<run_id>[\w.-]+)\] (?P<message>.*)$", re.DOTALL)

# Libraries whose INFO output drowns out the saga's own progress lines
NOISY_LOGGERS = ("chromadb", "httpx", "httpcore", "botocore", "urllib3", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }

        match = _RUN_PREFIX.match(message)
        if match:
            log_data["run_id"] = match.group("run_id")
            message = match.group("message")
        log_data["message"] = message

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class SimpleFormatter(logging.Formatter):
    """LEVEL [timestamp]: message"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%dT%H:%M:%S')
        log_line = f"{record.levelname} [{timestamp}]: {record.getMessage()}"

        if record.exc_info:
            log_line += "\n" + self.formatException(record.exc_info)

        return log_line


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Minimum log level name; unknown names fall back to INFO
        json_logs: Emit JSON lines instead of the plain format
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(JSONFormatter() if json_logs else SimpleFormatter())
    root_logger.addHandler(console_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Logging configured - Level: {log_level.upper()}, Format: {'JSON' if json_logs else 'Simple'}"
    )
