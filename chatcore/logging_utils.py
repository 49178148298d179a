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

from chatcore.metrics import record_ops_request


# Message being worked on by the scheduler or transport in the current task
message_id_ctx: ContextVar[Optional[int]] = ContextVar("message_id", default=None)

# Probe being served by the ops HTTP app
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_CONTEXT_FIELDS = (("message_id", message_id_ctx), ("request_id", request_id_ctx))

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "websockets.client")


@contextmanager
def message_context(message_id: Optional[int]) -> Iterator[None]:
    """Tag every log record emitted inside the block with message_id."""
    token = message_id_ctx.set(message_id)
    try:
        yield
    finally:
        message_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 timestamp plus message and request ids."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        log_record.setdefault(
            'ts', datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
        )
        log_record['level'] = record.levelname

        for key, var in _CONTEXT_FIELDS:
            value = var.get()
            if value is not None and key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every ChatCore log record to stdout as one JSON object per line.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    # Uvicorn installs its own handlers when it serves the ops app
    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    # Probes are logged by OpsRequestMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class OpsRequestMiddleware(BaseHTTPMiddleware):
    """
    Tags each ops HTTP request with an id, times it and logs one record.

    Scrapes of /metrics are timed but not counted, so they do not
    inflate the counters they read.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        elapsed = time.perf_counter() - started
        response.headers["X-Request-ID"] = request_id
        path = request.url.path
        if path != "/metrics":
            record_ops_request(path, response.status_code, elapsed)

        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logging.getLogger("chatcore.ops").log(
            level,
            f"{request.method} {path} -> {response.status_code}",
            extra={"request_id": request_id, "status": response.status_code,
                   "latency_ms": round(elapsed * 1000, 2)},
        )
        return response
