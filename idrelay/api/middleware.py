from __future__ import annotations

import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("idrelay.api")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class CorsMiddleware(BaseHTTPMiddleware):
    """Permissive CORS for browser callers.

    OPTIONS preflights are answered here with 200 and no body, before any
    routing or validation happens.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            response = await call_next(request)
        for k, v in CORS_HEADERS.items():
            response.headers[k] = v
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each relay call with an X-Request-ID.

    The id is stored on `request.state` so the relay pipeline can stamp it on
    its stage logs, and is echoed back on the response. A caller-supplied id
    that is longer than `max_len` or not printable is replaced with a fresh one.
    """

    def __init__(self, app, *, header_name: str = "X-Request-ID", max_len: int = 128):
        super().__init__(app)
        self._header_name = header_name
        self._max_len = max_len

    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get(self._header_name)
        if not rid or len(rid) > self._max_len or not rid.isprintable():
            rid = uuid4().hex
        request.state.request_id = rid
        response: Response = await call_next(request)
        response.headers[self._header_name] = rid
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One structured log record per request.

    Security notes:
    - Never logs request bodies or Authorization headers.

    """

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.monotonic()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            return response
        finally:
            dur_ms = int((time.monotonic() - start) * 1000)
            log.info(
                "api_request",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": getattr(response, "status_code", None),
                    "duration_ms": dur_ms,
                },
            )
