"""
Structured logging configuration shared by the platform services.

Every record is rendered as one JSON object per line so log shippers
(ELK, CloudWatch, Datadog) can index the trace context and custom fields.
"""

import logging
import logging.handlers
import os
import re
import sys
import json
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
actor_id_var: ContextVar[Optional[str]] = ContextVar('actor_id', default=None)

SENSITIVE_KEYS = re.compile(r"token|password|phone|email|aadhaar|pan|secret|authorization", re.IGNORECASE)
MASK = "***"


def mask_sensitive_fields(payload: Any) -> Any:
    """
    Return a deep copy of ``payload`` with sensitive values replaced by ``***``.

    Keys are matched case-insensitively; nested dicts and lists of dicts are
    walked recursively. Non-container values are returned unchanged.
    """
    if isinstance(payload, dict):
        masked = {}
        for key, value in payload.items():
            if SENSITIVE_KEYS.search(str(key)):
                masked[key] = MASK
            else:
                masked[key] = mask_sensitive_fields(value)
        return masked
    if isinstance(payload, list):
        return [mask_sensitive_fields(item) for item in payload]
    return payload


class StructuredFormatter(logging.Formatter):
    """JSON formatter with service metadata, trace context and custom fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'unknown-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
        }

        trace_context = self._get_trace_context(record)
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
            "module": record.module
        }

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info)
            }

        extra_fields = getattr(record, 'extra_fields', None)
        if isinstance(extra_fields, dict):
            log_obj["custom"] = mask_sensitive_fields(extra_fields)

        if hasattr(record, 'duration_ms'):
            log_obj["performance"] = {
                "duration_ms": record.duration_ms
            }

        return json.dumps(log_obj, default=str)

    def _get_trace_context(self, record: logging.LogRecord) -> Optional[Dict[str, Any]]:
        """Trace ids from the record (set by LoggerAdapter) or the current context"""
        context = {}
        for name, var in (
            ("request_id", request_id_var),
            ("correlation_id", correlation_id_var),
            ("actor_id", actor_id_var),
        ):
            value = getattr(record, name, None) or var.get()
            if value:
                context[name] = value
        return context or None


class PerformanceFilter(logging.Filter):
    """Convert a ``duration`` attribute in seconds into ``duration_ms``"""

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'duration'):
            record.duration_ms = record.duration * 1000
        return True


class SecurityFilter(logging.Filter):
    """Redact ``key=value`` pairs for sensitive keys inside the message text"""

    PATTERN = re.compile(
        r"(?P<key>password|token|api_key|secret|authorization|cookie|session)(?P<sep>\s*[=:]\s*)(?P<value>[^\s,;]+)",
        re.IGNORECASE,
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str) and self.PATTERN.search(record.msg):
            record.msg = self.PATTERN.sub(lambda m: f"{m.group('key')}{m.group('sep')}{MASK}", record.msg)
        return True


def setup_logging(
    service_name: str,
    level: str = "INFO",
    enable_console: bool = True,
    enable_file: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Setup structured logging for a service

    Args:
        service_name: Name of the service, stamped on every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Enable stdout output
        enable_file: Enable rotating file output
        log_file: Path to log file
    """
    os.environ['SERVICE_NAME'] = service_name

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    formatter = StructuredFormatter()
    handlers = []

    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if enable_file and log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=5
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(PerformanceFilter())
        handler.addFilter(SecurityFilter())
        root_logger.addHandler(handler)

    logging.getLogger('uvicorn').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={
            'extra_fields': {
                'service': service_name,
                'level': level,
                'handlers': {
                    'console': enable_console,
                    'file': enable_file
                }
            }
        }
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Injects the current request context into every record it emits"""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})

        request_id = request_id_var.get()
        if request_id:
            extra['request_id'] = request_id

        correlation_id = correlation_id_var.get()
        if correlation_id:
            extra['correlation_id'] = correlation_id

        actor_id = actor_id_var.get()
        if actor_id:
            extra['actor_id'] = actor_id

        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    """Logger for ``name`` (usually ``__name__``) with context injection"""
    return LoggerAdapter(logging.getLogger(name), {})


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    actor_id: Optional[str] = None
) -> None:
    """Bind trace identifiers to the current context"""
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if actor_id:
        actor_id_var.set(actor_id)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request and response with its duration and
    echoes the request id back in ``X-Request-ID``
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        correlation_id = request.headers.get('X-Correlation-ID')

        set_request_context(
            request_id=request_id,
            correlation_id=correlation_id
        )

        logger = get_logger(__name__)
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'client_host': request.client.host if request.client else None
                }
            }
        )

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    'extra_fields': {
                        'method': request.method,
                        'path': request.url.path,
                        'duration_ms': (time.time() - start_time) * 1000
                    }
                }
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'status_code': response.status_code,
                    'duration_ms': (time.time() - start_time) * 1000
                }
            }
        )
        response.headers['X-Request-ID'] = request_id
        return response
