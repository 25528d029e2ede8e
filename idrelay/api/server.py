from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, TypeVar

import anyio
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response

from idrelay.api.middleware import CORS_HEADERS, AccessLogMiddleware, CorsMiddleware, RequestIdMiddleware
from idrelay.api.models import ErrorEnvelope, HealthOut, IdentifyIn
from idrelay.core.config import RelayConfig
from idrelay.core.errors import InvalidRequest, RelayError, RequestCancelled
from idrelay.core.relay import RelayHandler
from idrelay.core.targets import get_target
from idrelay.core.upstream import UpstreamClient

log = logging.getLogger("idrelay.api")

T = TypeVar("T")

# Every method a browser or script might try; only POST gets past check_method.
IDENTIFY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def _error_response(err: RelayError) -> JSONResponse:
    envelope = ErrorEnvelope(error=err.message, details=err.details)
    return JSONResponse(envelope.model_dump(exclude_none=True), status_code=err.http_status)


def _validation_summary(err: ValidationError) -> str:
    msgs = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "body"
        msgs.append(f"{loc}: {e.get('msg')}")
    return "; ".join(msgs)


async def run_until_disconnect(
    request: Request,
    fn: Callable[[threading.Event], T],
    *,
    poll_sec: float = 0.5,
) -> T:
    """Run blocking `fn(cancel)` in the threadpool; set `cancel` if the caller leaves.

    The request body must already be consumed: disconnect polling reads from
    the ASGI receive channel.
    """

    cancel = threading.Event()
    outcome: Dict[str, Any] = {}

    async def watch() -> None:
        while True:
            await anyio.sleep(poll_sec)
            if await request.is_disconnected():
                log.warning(
                    "client_disconnected",
                    extra={"request_id": getattr(request.state, "request_id", None)},
                )
                cancel.set()
                return

    async with anyio.create_task_group() as tg:
        tg.start_soon(watch)
        try:
            outcome["result"] = await run_in_threadpool(fn, cancel)
        except Exception as e:
            # Raised outside the task group so it is not wrapped in an ExceptionGroup.
            outcome["error"] = e
        finally:
            tg.cancel_scope.cancel()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


def create_app(config: Optional[RelayConfig] = None, *, client: Optional[UpstreamClient] = None) -> FastAPI:
    """Create the FastAPI app.

    `client` replaces the default UpstreamClient (tests inject one backed by
    a fake transport).
    """

    cfg = config or RelayConfig.from_env()
    if client is None:
        client = UpstreamClient(cfg, get_target(cfg.target, endpoint_override=cfg.upstream_url))
    handler = RelayHandler(cfg, client)

    logging.getLogger("idrelay").setLevel(cfg.log_level)

    app = FastAPI(title="idrelay", version="0.1")
    app.state.cfg = cfg
    app.state.handler = handler

    app.add_middleware(CorsMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(AccessLogMiddleware)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if isinstance(exc, RequestCancelled):
            log.info("identify_cancelled", extra={"request_id": getattr(request.state, "request_id", None)})
        return _error_response(exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        # Runs outside the middleware stack, so CORS headers are set here.
        log.exception(
            "unhandled_error",
            exc_info=exc,
            extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
        )
        envelope = ErrorEnvelope(error="internal error")
        return JSONResponse(
            envelope.model_dump(exclude_none=True), status_code=500, headers=dict(CORS_HEADERS)
        )

    @app.get("/health", response_model=HealthOut)
    def health() -> HealthOut:
        return HealthOut(ok=True, target=handler.target.name, availability_check=cfg.availability_check)

    @app.api_route("/identify", methods=IDENTIFY_METHODS)
    async def identify_endpoint(request: Request) -> Response:
        """Relay one identification request to the configured upstream.

        Body: {"imageUrl": "...", "apiKey": "..."}; an Authorization header,
        if present, is forwarded to upstreams using header auth.
        """

        handler.check_method(request.method)

        raw = await request.body()
        try:
            body = IdentifyIn.model_validate_json(raw or b"")
        except ValidationError as e:
            raise InvalidRequest("invalid request body", details=_validation_summary(e)) from e

        ident = handler.build_request(
            body.imageUrl,
            api_key=body.apiKey,
            authorization=request.headers.get("authorization"),
        )
        rid = getattr(request.state, "request_id", None)
        result = await run_until_disconnect(
            request,
            lambda cancel: handler.handle(ident, cancel, request_id=rid),
            poll_sec=cfg.disconnect_poll_sec,
        )
        return Response(content=result.body, status_code=result.status_code, media_type="application/json")

    return app


def app_from_env() -> FastAPI:
    """Factory used by Uvicorn / Docker entrypoints."""

    return create_app(RelayConfig.from_env())


# Default ASGI app (importable as idrelay.api.server:app)
app = app_from_env()
