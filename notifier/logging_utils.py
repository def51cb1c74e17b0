import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from notifier.metrics import record_http_request


# Correlation ids attached to every log record emitted while they are set.
# Dispatch tasks copy the context of the request that scheduled them.
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
batch_id_ctx: ContextVar[Optional[int]] = ContextVar("batch_id", default=None)

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore")


@contextmanager
def batch_context(batch_id: int) -> Iterator[None]:
    """Tag every log record emitted inside the block with batch_id."""
    token = batch_id_ctx.set(batch_id)
    try:
        yield
    finally:
        batch_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 `ts`, `level` and the current correlation ids."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.now(timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, var in (('request_id', request_id_ctx), ('batch_id', batch_id_ctx)):
            value = var.get()
            if value is not None:
                log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route application and server logs through a single JSON stdout handler.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _route_path(request: Request) -> str:
    """Route template (/batch/{batch_id}/send) to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log one JSON line per HTTP request and record its metrics.

    Log keys: ts, level, request_id, method, path, status, latency_ms, plus
    whatever log_webhook_data() attached for /webhook calls. The request id
    comes from an incoming X-Request-ID header when present and is echoed
    on the response.
    """

    logger = logging.getLogger("notifier.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            self._record(request, response.status_code, time.perf_counter() - started)
            return response
        finally:
            request_id_ctx.reset(token)

    def _record(self, request: Request, status_code: int, latency_seconds: float) -> None:
        if request.url.path != "/metrics":
            record_http_request(
                method=request.method,
                path=_route_path(request),
                status=status_code,
                latency_seconds=latency_seconds,
            )

        log_data = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status": status_code,
            "latency_ms": round(latency_seconds * 1000, 2),
        }
        log_data.update(getattr(request.state, "webhook_log_data", {}))

        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(level, "Request completed", extra=log_data)


def log_webhook_data(request: Request, result: str, **fields):
    """
    Attach webhook outcome fields to the request log line.

    Args:
        request: FastAPI request object
        result: processed, invalid_signature or invalid_json
        **fields: Correlator counters, e.g. correlated=1, not_found=0
    """
    request.state.webhook_log_data = {"result": result, **fields}
