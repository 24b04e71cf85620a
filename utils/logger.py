# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Structured Logger - JSON log lines for Cloud logging ingestion
"""
import json
import logging
from typing import Dict, Any, Optional

import config
from utils.timezone import get_local_time

SERVICE_NAME = 'st-calendar-sync'


def _base_entry(logger_name: str, event_type: str) -> Dict[str, Any]:
    return {
        "timestamp": get_local_time().isoformat(),
        "timezone": config.TARGET_TIMEZONE,
        "event_type": event_type,
        "service": SERVICE_NAME,
        "logger": logger_name,
    }


class StructuredLogger:
    """Provides structured logging in JSON format for better parsing and analysis"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name

    def log_sync_event(self, event_type: str, details: Dict[str, Any]):
        """Log a sync-related event with structured data"""
        log_entry = {**_base_entry(self.name, event_type), **details}
        message = json.dumps(log_entry, default=str)

        # Choose log level based on event type
        lowered = event_type.lower()
        if "error" in lowered or "failed" in lowered:
            self.logger.error(message)
        elif "warning" in lowered:
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_api_call(self, method: str, endpoint: str, status_code: Optional[int] = None,
                     duration_ms: Optional[float] = None, error: Optional[str] = None):
        """Log API call details"""
        log_entry = _base_entry(self.name, "api_call")
        log_entry["method"] = method
        log_entry["endpoint"] = endpoint

        if status_code is not None:
            log_entry["status_code"] = status_code
        if duration_ms is not None:
            log_entry["duration_ms"] = duration_ms
        if error:
            log_entry["error"] = error

        if error or (status_code and status_code >= 500):
            self.logger.error(json.dumps(log_entry))
        elif status_code and status_code >= 400:
            self.logger.warning(json.dumps(log_entry))
        else:
            self.logger.debug(json.dumps(log_entry))

    def log_performance(self, operation: str, duration_seconds: float,
                        item_count: Optional[int] = None, success: bool = True):
        """Log performance metrics"""
        log_entry = _base_entry(self.name, "performance")
        log_entry["operation"] = operation
        log_entry["duration_seconds"] = duration_seconds
        log_entry["success"] = success

        if item_count is not None:
            log_entry["item_count"] = item_count
            log_entry["items_per_second"] = item_count / duration_seconds if duration_seconds > 0 else 0

        self.logger.info(json.dumps(log_entry))


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON"""

    def format(self, record):
        # If the message is already JSON, return it as-is
        message = record.getMessage()
        try:
            json.loads(message)
            return message
        except (json.JSONDecodeError, TypeError):
            log_entry = {
                "timestamp": get_local_time().isoformat(),
                "timezone": config.TARGET_TIMEZONE,
                "level": record.levelname,
                "logger": record.name,
                "message": message
            }

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_entry)


def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None):
    """Install one root handler: JSON lines in production, plain text otherwise"""
    level = level or config.LOG_LEVEL
    structured = config.STRUCTURED_LOGGING if structured is None else structured

    handler = logging.StreamHandler()
    if structured:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
