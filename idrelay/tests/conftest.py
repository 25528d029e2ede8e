from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

import pytest

from idrelay.client.http import BodyTooLarge, HttpResponse, TransportError
from idrelay.core.config import RelayConfig
from idrelay.core.targets import get_target
from idrelay.core.upstream import UpstreamClient

IMAGE_URL = "https://images.example.org/fungi/amanita.jpg"
INAT_URL = "https://api.inaturalist.org/v2/computervision/score_image"
MO_URL = "https://mushroomobserver.org/api2"

# Not a real JPEG; only the bytes matter to the relay.
IMAGE_BYTES = b"\xff\xd8\xff\xe0" + bytes(range(256)) * 8 + b"\r\n--not-a-boundary\r\n\xff\xd9"


def resp(status: int, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> HttpResponse:
    return HttpResponse(status=status, headers=headers or {}, body_bytes=body)


@dataclass
class Call:
    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[bytes]
    timeout_total: float


@dataclass
class FakeTransport:
    """In-memory transport: scripted responses per (method, url), every call recorded.

    The last scripted item for a route repeats forever.
    """

    calls: List[Call] = field(default_factory=list)
    routes: Dict[Tuple[str, str], List[Union[HttpResponse, BaseException]]] = field(default_factory=dict)

    def add(self, method: str, url: str, *items: Union[HttpResponse, BaseException]) -> "FakeTransport":
        self.routes.setdefault((method, url), []).extend(items)
        return self

    def calls_to(self, url: str, method: Optional[str] = None) -> List[Call]:
        return [c for c in self.calls if c.url == url and (method is None or c.method == method)]

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        timeouts,
        cancel=None,
        max_body_bytes: Optional[int] = None,
    ) -> HttpResponse:
        self.calls.append(Call(method, url, dict(headers or {}), body, timeouts.total))
        queue = self.routes.get((method, url))
        if not queue:
            raise TransportError(f"connection refused: {method} {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if max_body_bytes is not None and len(item.body_bytes) > max_body_bytes:
            raise BodyTooLarge("too large")
        return item


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_client(transport: FakeTransport, sleeps: List[float]):
    def _make(target: str = "inaturalist", **overrides) -> UpstreamClient:
        cfg = RelayConfig(target=target, **overrides)
        return UpstreamClient(
            cfg,
            get_target(cfg.target, endpoint_override=cfg.upstream_url),
            transport=transport,
            sleep=sleeps.append,
        )

    return _make
