"""Logging setup for EchoSpeak: readable console output plus a rotating JSON log."""
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path(os.environ.get("ECHOSPEAK_LOG_DIR", Path(__file__).resolve().parent.parent / "logs"))
LOG_FILE = LOG_DIR / "echospeak.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

# Attributes every LogRecord carries; anything else was passed via `extra=`.
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record. Fields such as ``cache_key`` or ``provider``
    given through ``extra=`` are emitted next to the message."""

    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_object[key] = value
        if record.exc_info:
            log_object["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_object, default=str)


def setup_logging(log_level=None):
    """Install the console and JSON file handlers on the root logger.

    Called once by ``create_tutor_service``; calling it again replaces the
    handlers instead of duplicating them.
    """
    log_level = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    file_handler = RotatingFileHandler(LOG_FILE, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    file_handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    for handler in (console_handler, file_handler):
        handler.setLevel(log_level)
        root_logger.addHandler(handler)
    return root_logger
