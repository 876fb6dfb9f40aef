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

from wa_store.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Event handlers run outside of any request, so request_id is optional
        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    uvicorn_loggers = [
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ]

    for logger_name in uvicorn_loggers:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Logged keys:
    - ts, level, request_id
    - method, path, status, latency_ms

    Send endpoints additionally attach:
    - jid: resolved recipient (when known)
    - result: sent, invalid_jid, error
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            if hasattr(request.state, "send_log_data"):
                log_data.update(request.state.send_log_data)

            logger = logging.getLogger("wa_store.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_send_data(request: Request, jid: str = None, result: str = None):
    """
    Attach send-specific logging data to the request state.
    The middleware merges it into the request log line.
    """
    send_data = {}

    if jid is not None:
        send_data["jid"] = jid

    if result is not None:
        send_data["result"] = result

    request.state.send_log_data = send_data
