from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

from idrelay.core.config import RelayConfig
from idrelay.core.errors import (
    InvalidRequest,
    MethodNotAllowed,
    PayloadError,
    RelayError,
    ServiceUnavailable,
)
from idrelay.core.targets import Credentials
from idrelay.core.upstream import UpstreamClient, UpstreamResult

log = logging.getLogger("idrelay.relay")


class Stage(str, Enum):
    """Pipeline stages, in order. A request never goes back to DOWNLOADING."""

    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    BUILDING_PAYLOAD = "building_payload"
    SUBMITTING = "submitting"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class IdentifyRequest:
    """One inbound identification call."""

    image_url: str
    api_key: Optional[str] = field(default=None, repr=False)
    auth_token: Optional[str] = field(default=None, repr=False)

    def credentials(self, server_token: Optional[str] = None) -> Credentials:
        """Caller-supplied credentials win over the server-side token."""

        if self.api_key or self.auth_token:
            return Credentials(api_key=self.api_key, auth_token=self.auth_token)
        return Credentials(api_key=server_token)


class RelayHandler:
    """Orchestrates availability check -> download -> submit for one request.

    Holds no per-request state; safe to share across worker threads.
    """

    def __init__(self, config: RelayConfig, client: UpstreamClient):
        self.config = config
        self.client = client

    submit_method = "POST"

    @property
    def target(self):
        return self.client.target

    def check_method(self, method: str) -> None:
        """Raise MethodNotAllowed for anything but the submission method."""

        if (method or "").upper() != self.submit_method:
            raise MethodNotAllowed(f"method {method} not allowed, use {self.submit_method}")

    def build_request(
        self,
        image_url: Optional[str],
        *,
        api_key: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> IdentifyRequest:
        """Validate decoded inbound fields.

        Raises InvalidRequest before any network activity.
        """

        url = (image_url or "").strip()
        if not url:
            raise InvalidRequest("imageUrl is required")
        try:
            parts = urlsplit(url)
            parts.port  # raises on an out-of-range port
        except ValueError:
            raise InvalidRequest("imageUrl must be an absolute http(s) URL") from None
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise InvalidRequest("imageUrl must be an absolute http(s) URL")

        api_key = (api_key or "").strip() or None
        auth_token = (authorization or "").strip() or None
        if self.target.requires_api_key and not (api_key or auth_token or self.config.upstream_token):
            raise InvalidRequest("apiKey is required")

        return IdentifyRequest(image_url=url, api_key=api_key, auth_token=auth_token)

    def handle(
        self,
        request: IdentifyRequest,
        cancel: Optional[threading.Event] = None,
        *,
        request_id: Optional[str] = None,
    ) -> UpstreamResult:
        """Run the pipeline and return the upstream answer verbatim.

        Raises a RelayError subclass on any failure.
        """

        stage = Stage.IDLE
        ctx = {"request_id": request_id, "target": self.target.name}
        log.info("identify_received", extra={**ctx, "image_url": request.image_url})
        try:
            if self.config.availability_check:
                stage = Stage.CHECKING
                if not self.client.check_availability(cancel):
                    raise ServiceUnavailable()

            stage = Stage.DOWNLOADING
            image = self.client.download_image(request.image_url, cancel)
            log.info("image_downloaded", extra={**ctx, "image_bytes": len(image)})

            stage = Stage.SUBMITTING
            result = self.client.submit_for_identification(
                image, request.credentials(self.config.upstream_token), cancel
            )
        except RelayError as e:
            failed_at = Stage.BUILDING_PAYLOAD if isinstance(e, PayloadError) else stage
            log.warning(
                "relay_failed",
                extra={
                    **ctx,
                    "stage": failed_at.value,
                    "http_status": e.http_status,
                    "error": e.message,
                    "details": e.details,
                },
            )
            raise

        log.info(
            "relay_done",
            extra={
                **ctx,
                "stage": Stage.DONE.value,
                "status_code": result.status_code,
                "attempts": result.attempts,
                "response_bytes": len(result.body),
            },
        )
        return result
