"""
Structured Logger - Enhanced logging with JSON output for better observability
"""
import json
import logging
from typing import Dict, Any, Optional

import config
from utils.timezone import get_display_time

SERVICE_NAME = "dashboard-calendar-sync"


class StructuredLogger:
    """Provides structured logging in JSON format for better parsing and analysis"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name

    def _base_entry(self, event_type: str) -> Dict[str, Any]:
        return {
            "timestamp": get_display_time().isoformat(),
            "timezone": config.DISPLAY_TIMEZONE,
            "event_type": event_type,
            "service": SERVICE_NAME,
            "logger": self.name
        }

    def log_sync_event(self, event_type: str, details: Dict[str, Any], verbose: bool = True):
        """Log a sync-related event with structured data

        Non-error events from silent (scheduled) syncs are logged at DEBUG.
        """
        log_entry = {**self._base_entry(event_type), **details}

        if "error" in event_type.lower() or "failed" in event_type.lower():
            self.logger.error(json.dumps(log_entry, default=str))
        elif "warning" in event_type.lower():
            self.logger.warning(json.dumps(log_entry, default=str))
        elif verbose:
            self.logger.info(json.dumps(log_entry, default=str))
        else:
            self.logger.debug(json.dumps(log_entry, default=str))

    def log_api_call(self, method: str, endpoint: str, status_code: Optional[int] = None,
                     duration_ms: Optional[float] = None, error: Optional[str] = None):
        """Log API call details"""
        log_entry = self._base_entry("api_call")
        log_entry["method"] = method
        log_entry["endpoint"] = endpoint

        if status_code is not None:
            log_entry["status_code"] = status_code
        if duration_ms is not None:
            log_entry["duration_ms"] = round(duration_ms, 1)
        if error:
            log_entry["error"] = error

        if error or (status_code and status_code >= 400):
            self.logger.error(json.dumps(log_entry))
        else:
            self.logger.debug(json.dumps(log_entry))

    def log_security_event(self, event: str, widget_id: Optional[str] = None,
                           details: Optional[Dict] = None):
        """Log security-related events"""
        log_entry = self._base_entry("security")
        log_entry["security_event"] = event

        if widget_id:
            log_entry["widget_id"] = widget_id
        if details:
            log_entry["details"] = details

        self.logger.warning(json.dumps(log_entry))


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON"""

    def format(self, record):
        # If the message is already JSON, return it as-is
        try:
            json.loads(record.getMessage())
            return record.getMessage()
        except (json.JSONDecodeError, TypeError):
            log_entry = {
                "timestamp": get_display_time().isoformat(),
                "timezone": config.DISPLAY_TIMEZONE,
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage()
            }

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_entry)


def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None):
    """Install the root handler once, JSON or plain depending on config"""
    level = level or config.LOG_LEVEL
    structured = config.STRUCTURED_LOGGING if structured is None else structured

    root = logging.getLogger()
    root.setLevel(level)

    if not root.handlers:
        handler = logging.StreamHandler()
        if structured:
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
        root.addHandler(handler)
