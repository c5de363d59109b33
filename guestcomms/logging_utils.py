import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from guestcomms.metrics import record_http_request
from guestcomms.utils import utcnow


# Correlation ids for the current request, or the job being delivered
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
job_ctx: ContextVar[Optional[Dict[str, str]]] = ContextVar("job", default=None)

QUIET_PATHS = frozenset({"/metrics", "/health/live", "/health/ready"})


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


@contextmanager
def job_context(message_id: str, tenant_id: Optional[str] = None):
    """
    Tag every log record emitted inside the block with the job being delivered.

    The claim loop runs outside any HTTP request, so without this its logs
    could not be correlated back to a message log entry.
    """
    fields = {"message_id": message_id}
    if tenant_id:
        fields["tenant_id"] = tenant_id
    token = job_ctx.set(fields)
    try:
        yield
    finally:
        job_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with ISO-8601 `ts`, `level` and whichever correlation ids are in scope."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = utcnow().strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = get_request_id()
            if req_id:
                log_record['request_id'] = req_id

        for key, value in (job_ctx.get() or {}).items():
            log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers to one JSON stdout handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    root.handlers = [handler]

    for logger_name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Request logs come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request, plus the HTTP metrics.

    Every line carries request_id, method, path, status and latency_ms;
    tenant routes add tenant_id, and routes can attach more fields with
    `add_log_fields`. Probe and scrape endpoints log at DEBUG only.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            route_path = _route_path(request)

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route_path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            tenant_id = request.path_params.get("tenant_id")
            if tenant_id:
                log_data["tenant_id"] = tenant_id
            log_data.update(getattr(request.state, "log_fields", {}))

            logger = logging.getLogger("guestcomms.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            elif request.url.path in QUIET_PATHS:
                logger.debug("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def _route_path(request: Request) -> str:
    """Route template (e.g. /tenants/{tenant_id}/...) so ids don't become metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def add_log_fields(request: Request, **fields) -> None:
    """
    Attach fields to the request's completion log line.

    None values are dropped; later calls override earlier ones.
    """
    current = dict(getattr(request.state, "log_fields", {}))
    current.update({key: value for key, value in fields.items() if value is not None})
    request.state.log_fields = current
