from __future__ import annotations

import http.client
import json
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import quote, urlsplit

from idrelay.core.config import HttpTimeouts
from idrelay.core.errors import RequestCancelled

_PATH_SAFE = "/%?=&;:@!$'()*+,~"


class TransportError(Exception):
    """Network-level failure (DNS, connect, TLS, reset, malformed response)."""


class TransportTimeout(TransportError):
    """A per-operation deadline was exceeded."""


class BodyTooLarge(TransportError):
    """Response body exceeded the caller's size cap."""


@dataclass(frozen=True, slots=True)
class HttpResponse:
    """HTTP response wrapper.

    Security notes:
    - Treat `body_bytes` as untrusted.

    """

    status: int
    headers: Mapping[str, str]
    body_bytes: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode body as JSON."""

        return json.loads(self.body_bytes.decode("utf-8", errors="strict"))


class Transport(Protocol):
    """Anything able to perform one blocking HTTP exchange."""

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        timeouts: HttpTimeouts,
        cancel: Optional[threading.Event] = None,
        max_body_bytes: Optional[int] = None,
    ) -> HttpResponse:
        ...


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise RequestCancelled()


class _CancelWatch:
    """Shut the socket down as soon as `cancel` fires.

    A blocked recv() is not woken by close(); shutdown() is.
    """

    def __init__(self, cancel: Optional[threading.Event], poll_sec: float = 0.1):
        self._cancel = cancel
        self._poll_sec = poll_sec
        self._done = threading.Event()
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    def attach(self, sock: Optional[socket.socket]) -> None:
        self._sock = sock

    def _run(self) -> None:
        assert self._cancel is not None
        while not self._done.wait(self._poll_sec):
            if self._cancel.is_set():
                sock = self._sock
                if sock is not None:
                    try:
                        sock.shutdown(socket.SHUT_RDWR)
                    except OSError:
                        pass
                return

    def __enter__(self) -> "_CancelWatch":
        if self._cancel is not None:
            self._thread = threading.Thread(target=self._run, name="idrelay-cancel-watch", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self._done.set()
        if self._thread is not None:
            self._thread.join()


class HttpTransport:
    """Minimal stdlib-only blocking HTTP client.

    Each call opens a fresh connection and sends `Connection: close`: third
    party hosts recycle idle connections aggressively, so nothing is pooled.
    The instance holds no per-request state and is shared between requests.

    Security notes:
    - Uses the default SSL context (verification ON).

    """

    def __init__(self, *, ssl_context: Optional[ssl.SSLContext] = None, chunk_size: int = 64 * 1024):
        self._ssl_context = ssl_context or ssl.create_default_context()
        self._chunk_size = int(chunk_size)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        timeouts: HttpTimeouts,
        cancel: Optional[threading.Event] = None,
        max_body_bytes: Optional[int] = None,
    ) -> HttpResponse:
        """Perform one exchange and buffer the whole response.

        Non-2xx statuses are returned, not raised.

        Raises:
          TransportTimeout: handshake, header wait or total deadline exceeded
          TransportError: any other network failure
          BodyTooLarge: response larger than max_body_bytes
          RequestCancelled: `cancel` was set
        """

        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as e:
            raise TransportError(f"malformed url: {url!r}") from e
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise TransportError(f"unsupported url: {url!r}")
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        # Non-ASCII characters are percent-encoded as UTF-8; existing escapes are kept.
        path = quote(path, safe=_PATH_SAFE)

        _check_cancel(cancel)
        deadline = time.monotonic() + timeouts.total

        conn: http.client.HTTPConnection
        if parts.scheme == "https":
            conn = http.client.HTTPSConnection(
                parts.hostname, port, timeout=timeouts.handshake, context=self._ssl_context
            )
        else:
            conn = http.client.HTTPConnection(parts.hostname, port, timeout=timeouts.handshake)

        hdrs: Dict[str, str] = dict(headers or {})
        hdrs["Connection"] = "close"
        resp: Optional[http.client.HTTPResponse] = None

        try:
            with _CancelWatch(cancel) as watch:
                conn.connect()
                # getresponse() drops conn.sock once the server says close.
                sock = conn.sock
                watch.attach(sock)
                _check_cancel(cancel)

                sock.settimeout(min(timeouts.header, _remaining(deadline)))
                conn.request(method, path, body=body, headers=hdrs)
                resp = conn.getresponse()

                length = resp.getheader("Content-Length")
                if max_body_bytes is not None and length and length.isdigit():
                    if int(length) > max_body_bytes:
                        raise BodyTooLarge(f"response too large: {length} > {max_body_bytes}")

                chunks = []
                total = 0
                while True:
                    _check_cancel(cancel)
                    sock.settimeout(_remaining(deadline))
                    chunk = resp.read(self._chunk_size)
                    if not chunk:
                        break
                    total += len(chunk)
                    if max_body_bytes is not None and total > max_body_bytes:
                        raise BodyTooLarge(f"response too large: more than {max_body_bytes} bytes")
                    chunks.append(chunk)
                _check_cancel(cancel)

                return HttpResponse(
                    status=int(resp.status),
                    headers={k: v for k, v in resp.getheaders()},
                    body_bytes=b"".join(chunks),
                )
        except (RequestCancelled, TransportError):
            raise
        except socket.timeout as e:
            _check_cancel(cancel)
            raise TransportTimeout(f"timed out talking to {parts.hostname}") from e
        except (OSError, ValueError, http.client.HTTPException) as e:
            _check_cancel(cancel)
            raise TransportError(f"network error: {e}") from e
        finally:
            if resp is not None:
                resp.close()
            conn.close()


def _remaining(deadline: float) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise TransportTimeout("deadline exceeded")
    return left
