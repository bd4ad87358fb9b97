import logging
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .config import settings


def setup_logging() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)
    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.dict_tracebacks,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _redact_path(path: str) -> str:
    parts = path.split("/")
    if len(parts) > 2 and parts[1] == "portal":
        parts[2] = "{token}"
    return "/".join(parts)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Tag every log line of a request with its X-Request-ID and write one
    request_completed line per request. Portal tokens are kept out of the path.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        path = _redact_path(request.url.path)
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=path)
        started = time.perf_counter()
        try:
            response: Response = await call_next(request)
            structlog.get_logger("fieldops.request").info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "method", "path")
        response.headers["X-Request-ID"] = request_id
        return response
