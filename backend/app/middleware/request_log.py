import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging_config import request_id_ctx_var

logger = logging.getLogger("app.request")

REQUEST_ID_HEADER = "X-Request-ID"


def _incoming_request_id(request: Request) -> str | None:
    value = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    if not value or len(value) > 128 or not value.isprintable():
        return None
    return value


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id and emits one access-log line per response.

    Static media under the mount prefix is not logged.
    """

    def __init__(self, app, *, skip_prefixes: tuple[str, ...] = ()) -> None:
        super().__init__(app)
        self.skip_prefixes = skip_prefixes

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request) or str(uuid.uuid4())
        token = request_id_ctx_var.set(request_id)
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        if not (self.skip_prefixes and request.url.path.startswith(self.skip_prefixes)):
            logger.info(
                "request",
                extra={
                    "request_id": request_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                },
            )
        return response
