"""
Centralized logging configuration for the application.
Provides plain module loggers plus a structured JSON logger for events that
need their context preserved (provider failures, reconciliation decisions).
"""
import logging
import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def setup_logging(
    level: str = "INFO",
    log_format: Optional[str] = None
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (optional)
    """
    if log_format is None:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Set specific log levels for noisy libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)
    logging.getLogger('stripe').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StructuredLogger:
    """
    Structured logger that outputs one JSON document per log line
    """

    def __init__(self, name: str = "storefront", service: str = "storefront-api"):
        self.logger = logging.getLogger(name)
        self.service = service

    def _create_log_entry(
        self,
        level: str,
        message: str,
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        exception: Optional[BaseException] = None
    ) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.upper(),
            "message": message,
            "service": self.service,
        }

        if user_id:
            log_entry["user_id"] = user_id

        if endpoint:
            log_entry["endpoint"] = endpoint

        if metadata:
            log_entry["metadata"] = metadata

        if exception:
            log_entry["exception"] = {
                "type": type(exception).__name__,
                "message": str(exception),
                "traceback": "".join(
                    traceback.format_exception(type(exception), exception, exception.__traceback__)
                ),
            }

        return log_entry

    def _emit(self, level: int, name: str, message: str, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        entry = self._create_log_entry(name, message, **kwargs)
        self.logger.log(level, json.dumps(entry, default=str))

    def debug(self, message: str, **kwargs):
        self._emit(logging.DEBUG, "debug", message, **kwargs)

    def info(self, message: str, **kwargs):
        self._emit(logging.INFO, "info", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._emit(logging.WARNING, "warning", message, **kwargs)

    def error(self, message: str, **kwargs):
        self._emit(logging.ERROR, "error", message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._emit(logging.CRITICAL, "critical", message, **kwargs)


# Create global logger instance
structured_logger = StructuredLogger()
