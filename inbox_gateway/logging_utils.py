"""
Structured JSON logging and the per-request access log.

Every log line carries `ts`, `level`, `name` and, inside a request, the
`request_id` that is also returned as the X-Request-ID header.
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
from pythonjsonlogger import jsonlogger

from inbox_gateway.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"
ACCESS_LOGGER = "inbox_gateway.requests"

# Not counted in http metrics: scraping and probes would dominate the series
UNMETERED_PATHS = ("/metrics", "/health/live", "/health/ready")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds an ISO-8601 UTC `ts`, the level name and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        log_record.setdefault(
            'ts',
            datetime.fromtimestamp(record.created, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z',
        )
        log_record['level'] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and 'request_id' not in log_record:
            log_record['request_id'] = request_id


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers through one JSON handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        The configured root logger
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every provider call at INFO, including the Graph API URL
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _metric_path(request: Request) -> str:
    """
    Low-cardinality path label: the matched route template when there is
    one (/api/messages/{message_id}), otherwise the raw path.
    """
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request.

    Log keys:
    - request_id: taken from X-Request-ID when the caller sends one
    - method, path, status
    - latency_ms: request processing time in milliseconds
    - client: remote address

    Webhook requests add (see log_webhook_data):
    - result: processed, no_events, invalid_signature, handshake_ok,
      handshake_forbidden, handshake_unconfigured, test_injected,
      custom_route, error
    - events: number of messages ingested, when known
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            latency_seconds = time.perf_counter() - started

            if request.url.path not in UNMETERED_PATHS:
                record_http_request(
                    method=request.method,
                    path=_metric_path(request),
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))

            logging.getLogger(ACCESS_LOGGER).log(_level_for(response.status_code), "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, result: Optional[str] = None, events: Optional[int] = None):
    """
    Attach webhook outcome fields to the request's access log line.

    Args:
        request: FastAPI request object
        result: Processing result (see RequestLoggingMiddleware)
        events: Number of messages ingested from the payload
    """
    fields = {"result": result, "events": events}
    request.state.webhook_log_data = {key: value for key, value in fields.items() if value is not None}
