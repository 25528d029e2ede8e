from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from idrelay.client.http import BodyTooLarge, HttpTransport, Transport, TransportError
from idrelay.core.config import RelayConfig
from idrelay.core.errors import (
    DownloadError,
    RequestCancelled,
    TransientUpstreamFailure,
    UpstreamError,
)
from idrelay.core.multipart import build_multipart
from idrelay.core.targets import Credentials, UpstreamTarget

log = logging.getLogger("idrelay.upstream")

# Statuses that prove the upstream is up. A bare GET against a POST-only
# endpoint is expected to answer 405.
ALIVE_STATUSES = frozenset({200, 405})

LOG_BODY_LIMIT = 512


def is_retryable_status(status: int) -> bool:
    """5xx and 429 may succeed on a later attempt; other 4xx never will."""

    return status == 429 or 500 <= status < 600


def _truncate(body: bytes, limit: int = LOG_BODY_LIMIT) -> str:
    text = (body or b"").decode("utf-8", errors="replace")
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-delay retry bound for upstream submission."""

    max_attempts: int = 3
    delay_sec: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_sec < 0:
            raise ValueError("delay_sec must be >= 0")


@dataclass(frozen=True, slots=True)
class UpstreamResult:
    """Raw upstream answer. The body is passed through untouched."""

    status_code: int
    body: bytes
    attempts: int = 1


class AttemptState(str, Enum):
    SUBMITTING = "submitting"
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


def _cancellable_sleep(cancel: Optional[threading.Event]) -> Callable[[float], None]:
    def sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
            return
        if cancel.wait(seconds):
            raise RequestCancelled()

    return sleep


class UpstreamClient:
    """Talks to the image host and to the identification API.

    Stateless apart from its configuration; one instance serves every
    inbound request.
    """

    def __init__(
        self,
        config: RelayConfig,
        target: UpstreamTarget,
        *,
        transport: Optional[Transport] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config
        self.target = target
        self.retry = RetryPolicy(max_attempts=config.max_attempts, delay_sec=config.retry_delay_sec)
        self._transport: Transport = transport or HttpTransport()
        self._sleep = sleep

    def _base_headers(self) -> dict:
        return {"User-Agent": self.config.user_agent}

    def check_availability(self, cancel: Optional[threading.Event] = None) -> bool:
        """Probe the upstream endpoint; True when it answers 200 or 405."""

        url = self.target.availability_url
        try:
            resp = self._transport.request(
                "GET",
                url,
                headers=self._base_headers(),
                timeouts=self.config.availability_timeouts,
                cancel=cancel,
                max_body_bytes=64 * 1024,
            )
        except TransportError as e:
            log.warning("upstream_unreachable", extra={"url": url, "error": str(e)})
            return False

        alive = resp.status in ALIVE_STATUSES
        log.info(
            "upstream_probe",
            extra={"url": url, "status_code": resp.status, "alive": alive},
        )
        return alive

    def download_image(self, url: str, cancel: Optional[threading.Event] = None) -> bytes:
        """Fetch the image at `url` and return its bytes.

        Raises DownloadError on transport failure, timeout, non-2xx, empty
        body or a body above max_image_bytes.
        """

        headers = self._base_headers()
        headers["Accept"] = "image/*"
        try:
            resp = self._transport.request(
                "GET",
                url,
                headers=headers,
                timeouts=self.config.download_timeouts,
                cancel=cancel,
                max_body_bytes=self.config.max_image_bytes,
            )
        except BodyTooLarge as e:
            raise DownloadError("image too large", cause=e) from e
        except TransportError as e:
            raise DownloadError(cause=e) from e

        if not resp.ok:
            raise DownloadError(status=resp.status)
        if not resp.body_bytes:
            raise DownloadError("downloaded image is empty")
        return resp.body_bytes

    def _attempt(self, image: bytes, credentials: Credentials, cancel: Optional[threading.Event]) -> UpstreamResult:
        # The payload is rebuilt per attempt: a sent body is considered consumed.
        payload = build_multipart(
            image,
            self.target.build_fields(credentials),
            file_field=self.target.file_field,
            filename=self.target.filename,
        )
        headers = self._base_headers()
        headers["Content-Type"] = payload.content_type
        headers["Accept"] = "application/json"
        headers.update(self.target.auth_headers(credentials))

        try:
            resp = self._transport.request(
                "POST",
                self.target.endpoint,
                headers=headers,
                body=payload.body,
                timeouts=self.config.submit_timeouts,
                cancel=cancel,
            )
        except TransportError as e:
            raise TransientUpstreamFailure(cause=e) from e

        if resp.ok:
            return UpstreamResult(status_code=resp.status, body=resp.body_bytes)
        if is_retryable_status(resp.status):
            raise TransientUpstreamFailure(status=resp.status, body=resp.body_bytes)
        raise UpstreamError(resp.status, resp.body_bytes)

    def submit_for_identification(
        self,
        image: bytes,
        credentials: Credentials,
        cancel: Optional[threading.Event] = None,
    ) -> UpstreamResult:
        """POST the image to the identification endpoint, retrying transient failures.

        State machine per attempt:
          SUBMITTING -> SUCCESS
          SUBMITTING -> RETRYABLE -> (delay) -> SUBMITTING
          SUBMITTING -> TERMINAL
        RETRYABLE turns into TERMINAL once max_attempts is reached.
        """

        sleep = self._sleep or _cancellable_sleep(cancel)
        attempt = 0
        state = AttemptState.SUBMITTING

        while state is AttemptState.SUBMITTING:
            attempt += 1
            if cancel is not None and cancel.is_set():
                raise RequestCancelled()
            log.info(
                "upstream_attempt",
                extra={"target": self.target.name, "attempt": attempt, "image_bytes": len(image)},
            )
            try:
                result = self._attempt(image, credentials, cancel)
            except TransientUpstreamFailure as e:
                state = AttemptState.RETRYABLE if attempt < self.retry.max_attempts else AttemptState.TERMINAL
                log.warning(
                    "upstream_retry" if state is AttemptState.RETRYABLE else "upstream_exhausted",
                    extra={
                        "target": self.target.name,
                        "attempt": attempt,
                        "status_code": e.status,
                        "error": str(e.cause) if e.cause else None,
                        "body": _truncate(e.body),
                    },
                )
                if state is AttemptState.TERMINAL:
                    raise self._exhausted(e, attempt) from e
                sleep(self.retry.delay_sec)
                state = AttemptState.SUBMITTING
                continue
            except UpstreamError as e:
                e.attempts = attempt
                log.warning(
                    "upstream_rejected",
                    extra={
                        "target": self.target.name,
                        "attempt": attempt,
                        "status_code": e.status,
                        "body": _truncate(e.body),
                    },
                )
                raise

            log.info(
                "upstream_result",
                extra={"target": self.target.name, "attempt": attempt, "status_code": result.status_code},
            )
            return UpstreamResult(status_code=result.status_code, body=result.body, attempts=attempt)

        raise RuntimeError(f"unexpected attempt state {state}")

    @staticmethod
    def _exhausted(last: TransientUpstreamFailure, attempts: int) -> UpstreamError:
        if last.status is not None:
            return UpstreamError(last.status, last.body, attempts=attempts)
        return UpstreamError(None, str(last.details).encode("utf-8"), attempts=attempts)
