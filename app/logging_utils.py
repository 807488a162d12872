"""
Structured JSON logging and per-request access logs.

Every record carries ts, level, name and message, plus the request_id of
the request being served. RequestLoggingMiddleware writes one access log
line per request and feeds the HTTP metrics.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger.json import JsonFormatter

from app.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger("app.requests")

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Scraping the metrics endpoint should not show up in its own numbers
UNMETERED_PATHS = frozenset({"/metrics"})


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


def utc_timestamp() -> str:
    """Current time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MessageBoardJsonFormatter(JsonFormatter):
    """JSON formatter adding ts, level and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = utc_timestamp()
        log_record["level"] = record.levelname

        request_id = get_request_id()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send all application and Uvicorn logs to stdout as JSON.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(MessageBoardJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    return root


def level_for_status(status_code: int) -> int:
    """5xx logs as ERROR, 4xx as WARNING, anything else as INFO."""
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assign a request id, echo it in X-Request-ID and log the request.

    The access log line holds request_id, method, path, status and
    latency_ms. Message endpoints add result and, when known, server_id
    through log_message_data.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            path = request.url.path
            if path not in UNMETERED_PATHS:
                record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "message_log_data", {}))

            request_logger.log(level_for_status(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_message_data(request: Request, result: str, server_id: int = None):
    """
    Attach message-operation fields to the request's access log line.

    Args:
        request: FastAPI request object
        result: Operation outcome (created, listed, deleted, not_found,
            validation_error, storage_error)
        server_id: Identifier the operation acted on, if any
    """
    message_data = {"result": result}

    if server_id is not None:
        message_data["server_id"] = server_id

    request.state.message_log_data = message_data
