"""
Structured logging configuration and utilities for the dispatch service
"""
import structlog
import logging
import logging.handlers
import contextvars
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pathlib import Path
from enum import Enum

from emergency_dispatch.core.config import settings

SERVICE_NAME = "emergency-dispatch"
SERVICE_VERSION = "1.0.0"


class BusinessEventType(str, Enum):
    """Business event types for operational logging"""
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_DISPATCHED = "request_dispatched"
    REQUEST_PENDING = "request_pending"
    DISPATCH_CONFLICT = "dispatch_conflict"
    STATUS_CHANGED = "status_changed"
    RESPONDER_RELEASED = "responder_released"
    RESPONDER_DECLINED = "responder_declined"
    OFFER_EXPIRED = "offer_expired"
    COORDINATE_REPAIRED = "coordinate_repaired"


request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('request_id', default=None)
user_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('user_id', default=None)


def add_request_context(logger, method_name, event_dict):
    """Add request context to log entries"""
    request_id = request_id_var.get()
    user_id = user_id_var.get()

    if request_id:
        event_dict['request_id'] = request_id
    if user_id:
        event_dict['user_id'] = user_id

    return event_dict


def add_timestamp(logger, method_name, event_dict):
    """Add ISO timestamp to log entries"""
    event_dict['timestamp'] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Add service context to log entries"""
    event_dict['service'] = SERVICE_NAME
    event_dict['version'] = SERVICE_VERSION
    event_dict['environment'] = 'development' if settings.DEBUG else 'production'
    return event_dict


def filter_sensitive_data(logger, method_name, event_dict):
    """Filter sensitive data from log entries"""
    sensitive_keys = {'password', 'token', 'secret', 'authorization'}

    def _filter_dict(data: Dict[str, Any]) -> Dict[str, Any]:
        filtered = {}
        for key, value in data.items():
            if any(sensitive in key.lower() for sensitive in sensitive_keys):
                filtered[key] = "***"
            elif isinstance(value, dict):
                filtered[key] = _filter_dict(value)
            elif isinstance(value, list):
                filtered[key] = [_filter_dict(item) if isinstance(item, dict) else item for item in value]
            else:
                filtered[key] = value
        return filtered

    return _filter_dict(event_dict)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    RESERVED_ATTRS = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
        'filename', 'module', 'lineno', 'funcName', 'created',
        'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'getMessage', 'exc_info',
        'exc_text', 'stack_info', 'taskName'
    }

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname.lower(),
            'logger': record.name,
            'message': record.getMessage(),
            'service': SERVICE_NAME,
            'version': SERVICE_VERSION,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def _rotating_handler(path: Path) -> logging.handlers.RotatingFileHandler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.LOG_MAX_FILE_SIZE_MB * 1024 * 1024,
        backupCount=settings.LOG_MAX_BACKUP_COUNT
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging():
    """Configure structured logging for the application"""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_context,
            add_request_context,
            add_timestamp,
            filter_sensitive_data,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.JSONRenderer(default=str)
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if settings.DEBUG else log_level
        ),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # Suppress noisy third-party loggers
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.pool').setLevel(logging.WARNING)

    business_logger = logging.getLogger("business")
    business_logger.setLevel(logging.INFO)

    if not settings.LOG_TO_FILE:
        return

    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.addHandler(_rotating_handler(log_dir / "application.log"))

    error_handler = _rotating_handler(log_dir / "errors.log")
    error_handler.setLevel(logging.ERROR)
    root_logger.addHandler(error_handler)

    business_logger.addHandler(_rotating_handler(log_dir / "business.log"))
    # Disable propagation to avoid duplicate logs
    business_logger.propagate = False


class StructuredLogger:
    """Structured logger with context management"""

    def __init__(self, name: str = None):
        self.logger = structlog.get_logger(name)
        self._context = {}

    def bind(self, **kwargs) -> 'StructuredLogger':
        """Bind context to logger"""
        new_logger = StructuredLogger()
        new_logger.logger = self.logger.bind(**kwargs)
        new_logger._context = {**self._context, **kwargs}
        return new_logger

    def debug(self, event: str, **kwargs):
        self.logger.debug(event, **kwargs)

    def info(self, event: str, **kwargs):
        self.logger.info(event, **kwargs)

    def warning(self, event: str, **kwargs):
        self.logger.warning(event, **kwargs)

    def error(self, event: str, **kwargs):
        self.logger.error(event, **kwargs)

    def critical(self, event: str, **kwargs):
        self.logger.critical(event, **kwargs)

    def business_event(self, event_type: BusinessEventType, **kwargs):
        """Log business event to the business log stream"""
        business_logger = logging.getLogger("business")
        business_logger.info(
            json.dumps({
                'event_type': event_type.value,
                'category': 'business',
                'timestamp': datetime.now(timezone.utc).isoformat(),
                **self._context,
                **kwargs
            }, default=str)
        )
        self.logger.info(event_type.value, **kwargs)


def get_logger(name: str = None) -> StructuredLogger:
    """Get a structured logger instance"""
    return StructuredLogger(name)


def set_request_context(request_id: str, user_id: Optional[str] = None):
    """Set request context for logging"""
    request_id_var.set(request_id)
    if user_id:
        user_id_var.set(user_id)


def clear_request_context():
    """Clear request context"""
    request_id_var.set(None)
    user_id_var.set(None)


def get_request_context() -> Dict[str, Optional[str]]:
    """Get current request context"""
    return {
        'request_id': request_id_var.get(),
        'user_id': user_id_var.get()
    }
