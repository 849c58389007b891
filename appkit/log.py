"""
Structured JSON logging.

Logs go to stdout as one JSON object per line so that log collectors can
index the structured fields (tool, subject, decision, duration, ...).

Structured data is attached with the ``log_data`` extra::

    logger.info("Tool call succeeded", extra={"log_data": {"tool": "greet"}})
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
         "logger": "appkit.auth", "message": "Authentication successful",
         "subject": "alice", "decision": "authenticated"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    """Install the JSON formatter on a stdout handler for the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )
