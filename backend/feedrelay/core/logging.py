"""
Structured logging for the realtime service.
Records are correlated by the id of the connection whose inbound event is
being handled, the socket counterpart of a request id.
"""
import asyncio
import json
import logging
import time
from contextvars import ContextVar
from functools import wraps
from typing import Any, Dict, Optional

from feedrelay.core.config import settings
from feedrelay.realtime.errors import RealtimeError

# Context variable for connection-scoped data
connection_id_var: ContextVar[Optional[str]] = ContextVar('connection_id', default=None)


def get_connection_id() -> Optional[str]:
    """Get current connection ID from context."""
    return connection_id_var.get()


def set_connection_id(connection_id: Optional[str]) -> None:
    """Set connection ID in context."""
    connection_id_var.set(connection_id)


def configure_logging() -> None:
    """Apply LOG_LEVEL to the root logger (idempotent)."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    root.setLevel(level)


class StructuredLogger:
    """
    Structured JSON logger with connection context support.
    Logs in JSON format for production, human-readable for development.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name
        self._is_json = settings.APP_ENV == 'production'

    def _build_log_record(
        self,
        level: str,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> Dict[str, Any]:
        record = {'message': message}
        if self._is_json:
            # the plain formatter already prints these
            record.update(timestamp=time.strftime('%Y-%m-%dT%H:%M:%S%z'), level=level, logger=self.name)

        connection_id = get_connection_id()
        if connection_id:
            record['connection_id'] = connection_id

        if extra:
            record['context'] = extra

        if error:
            record['error'] = {
                'type': type(error).__name__,
                'message': str(error),
            }

        return record

    def _format_message(self, record: Dict[str, Any]) -> str:
        if self._is_json:
            return json.dumps(record, default=str)

        parts = [
            f"[{record.get('connection_id', '-')}]",
            record['message'],
        ]

        if 'context' in record:
            parts.append(f"| {record['context']}")

        if 'error' in record:
            parts.append(f"| error={record['error']['type']}: {record['error']['message']}")

        return ' '.join(parts)

    def debug(self, message: str, **extra):
        record = self._build_log_record('DEBUG', message, extra if extra else None)
        self.logger.debug(self._format_message(record))

    def info(self, message: str, **extra):
        record = self._build_log_record('INFO', message, extra if extra else None)
        self.logger.info(self._format_message(record))

    def warning(self, message: str, **extra):
        record = self._build_log_record('WARNING', message, extra if extra else None)
        self.logger.warning(self._format_message(record))

    def error(self, message: str, error: Optional[Exception] = None, **extra):
        record = self._build_log_record('ERROR', message, extra if extra else None, error)
        self.logger.error(self._format_message(record))

    def exception(self, message: str, error: Optional[Exception] = None, **extra):
        """Log error message with the active traceback."""
        record = self._build_log_record('ERROR', message, extra if extra else None, error)
        self.logger.exception(self._format_message(record))


def get_logger(name: str = 'feedrelay') -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


# Pre-configured loggers for the realtime domains
api_logger = get_logger('feedrelay.api')
gateway_logger = get_logger('feedrelay.gateway')
relay_logger = get_logger('feedrelay.relay')
signaling_logger = get_logger('feedrelay.signaling')


def log_operation(operation: str, logger: Optional[StructuredLogger] = None):
    """
    Decorator for logging coroutine entry/exit with timing.

    Usage:
        @log_operation("call:offer", signaling_logger)
        async def on_offer(...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            log = logger or api_logger
            start = time.time()
            log.debug(f"{operation} started")
            try:
                result = await func(*args, **kwargs)
                duration = round((time.time() - start) * 1000, 2)
                log.debug(f"{operation} completed", duration_ms=duration)
                return result
            except RealtimeError as e:
                log.debug(f"{operation} refused", error_code=e.code)
                raise
            except Exception as e:
                duration = round((time.time() - start) * 1000, 2)
                log.error(f"{operation} failed", error=e, duration_ms=duration)
                raise

        if not asyncio.iscoroutinefunction(func):
            raise TypeError("log_operation only wraps coroutine functions")
        return async_wrapper

    return decorator
