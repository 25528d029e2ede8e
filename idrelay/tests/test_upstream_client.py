from __future__ import annotations

import threading

import pytest

from conftest import IMAGE_BYTES, IMAGE_URL, INAT_URL, MO_URL, resp
from idrelay.client.http import TransportError, TransportTimeout
from idrelay.core.errors import DownloadError, RequestCancelled, UpstreamError
from idrelay.core.multipart import boundary_from_content_type, parse_multipart
from idrelay.core.targets import Credentials
from idrelay.core.upstream import RetryPolicy, is_retryable_status

TOKEN = Credentials(auth_token="JWT tok")


@pytest.mark.parametrize("status, alive", [(200, True), (405, True), (404, False), (500, False), (503, False)])
def test_availability_accepts_only_200_and_405(make_client, transport, status, alive):
    transport.add("GET", INAT_URL, resp(status))
    client = make_client()

    assert client.check_availability() is alive
    assert transport.calls[0].timeout_total == pytest.approx(10.0)


def test_availability_connection_error_means_unavailable(make_client, transport):
    transport.add("GET", INAT_URL, TransportTimeout("slow"))

    assert make_client().check_availability() is False


def test_download_returns_bytes_with_generous_timeout(make_client, transport):
    transport.add("GET", IMAGE_URL, resp(200, IMAGE_BYTES))

    data = make_client().download_image(IMAGE_URL)

    assert data == IMAGE_BYTES
    call = transport.calls[0]
    assert call.timeout_total == pytest.approx(180.0)
    assert call.headers["User-Agent"] == "Mushroom Identifier/1.0"


def test_download_non_2xx_carries_status(make_client, transport):
    transport.add("GET", IMAGE_URL, resp(404, b"gone"))

    with pytest.raises(DownloadError) as exc:
        make_client().download_image(IMAGE_URL)

    assert exc.value.status == 404
    assert exc.value.http_status == 500
    assert "404" in exc.value.details


def test_download_transport_failure_carries_cause(make_client, transport):
    transport.add("GET", IMAGE_URL, TransportError("dns failure"))

    with pytest.raises(DownloadError) as exc:
        make_client().download_image(IMAGE_URL)

    assert exc.value.status is None
    assert "dns failure" in exc.value.details


def test_download_rejects_oversize_and_empty_images(make_client, transport):
    transport.add("GET", IMAGE_URL, resp(200, b"x" * 64))
    with pytest.raises(DownloadError):
        make_client(max_image_bytes=16).download_image(IMAGE_URL)

    transport.routes.clear()
    transport.add("GET", IMAGE_URL, resp(200, b""))
    with pytest.raises(DownloadError):
        make_client().download_image(IMAGE_URL)


def test_submit_sends_multipart_with_auth_header(make_client, transport):
    transport.add("POST", INAT_URL, resp(200, b'{"results": []}'))

    result = make_client().submit_for_identification(IMAGE_BYTES, TOKEN)

    assert result.status_code == 200
    assert result.body == b'{"results": []}'
    assert result.attempts == 1

    call = transport.calls_to(INAT_URL, "POST")[0]
    assert call.headers["Authorization"] == "JWT tok"
    assert call.headers["Accept"] == "application/json"
    assert call.timeout_total == pytest.approx(60.0)
    boundary = boundary_from_content_type(call.headers["Content-Type"])
    parts = parse_multipart(call.body, boundary)
    assert parts["images"] == ("image.jpg", IMAGE_BYTES)


def test_submit_to_mushroom_observer_embeds_key_in_form(make_client, transport):
    transport.add("POST", MO_URL, resp(200, b"{}"))

    make_client("mushroom-observer").submit_for_identification(IMAGE_BYTES, Credentials(api_key="mo-key"))

    call = transport.calls_to(MO_URL, "POST")[0]
    assert "Authorization" not in call.headers
    parts = parse_multipart(call.body, boundary_from_content_type(call.headers["Content-Type"]))
    assert list(parts) == ["api_key", "method", "file"]
    assert parts["api_key"] == (None, b"mo-key")
    assert parts["file"][1] == IMAGE_BYTES


def test_retries_5xx_then_returns_third_body(make_client, transport, sleeps):
    transport.add("POST", INAT_URL, resp(502, b"bad gateway"), resp(503, b"busy"), resp(200, b'{"ok": 3}'))

    result = make_client().submit_for_identification(IMAGE_BYTES, TOKEN)

    assert result.body == b'{"ok": 3}'
    assert result.attempts == 3
    assert sleeps == [5.0, 5.0]

    calls = transport.calls_to(INAT_URL, "POST")
    assert len(calls) == 3
    # Payload is rebuilt for each attempt.
    boundaries = {boundary_from_content_type(c.headers["Content-Type"]) for c in calls}
    assert len(boundaries) == 3


def test_client_error_is_not_retried(make_client, transport, sleeps):
    transport.add("POST", INAT_URL, resp(422, b'{"error": "unprocessable image"}'), resp(200, b"{}"))

    with pytest.raises(UpstreamError) as exc:
        make_client().submit_for_identification(IMAGE_BYTES, TOKEN)

    assert len(transport.calls) == 1
    assert sleeps == []
    assert exc.value.status == 422
    assert exc.value.http_status == 422
    assert exc.value.details == '{"error": "unprocessable image"}'


def test_rate_limit_is_retried(make_client, transport, sleeps):
    transport.add("POST", INAT_URL, resp(429, b"slow down"), resp(200, b"{}"))

    result = make_client().submit_for_identification(IMAGE_BYTES, TOKEN)

    assert result.attempts == 2
    assert sleeps == [5.0]


def test_exhausted_5xx_reports_last_status_and_body(make_client, transport, sleeps):
    transport.add("POST", INAT_URL, resp(500, b"first"), resp(500, b"second"), resp(504, b"last words"))

    with pytest.raises(UpstreamError) as exc:
        make_client().submit_for_identification(IMAGE_BYTES, TOKEN)

    err = exc.value
    assert len(transport.calls) == 3
    assert err.attempts == 3
    assert err.http_status == 502
    assert "504" in err.details
    assert "last words" in err.details


def test_network_errors_are_retried_up_to_the_bound(make_client, transport, sleeps):
    transport.add("POST", INAT_URL, TransportError("connection reset by peer"))

    with pytest.raises(UpstreamError) as exc:
        make_client(max_attempts=2, retry_delay_sec=0.5).submit_for_identification(IMAGE_BYTES, TOKEN)

    assert len(transport.calls) == 2
    assert sleeps == [0.5]
    assert exc.value.status is None
    assert exc.value.http_status == 502
    assert "connection reset" in exc.value.details


def test_cancelled_request_makes_no_attempt(make_client, transport):
    transport.add("POST", INAT_URL, resp(200, b"{}"))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RequestCancelled):
        make_client().submit_for_identification(IMAGE_BYTES, TOKEN, cancel)

    assert transport.calls == []


def test_cancellation_interrupts_the_retry_delay(transport):
    from idrelay.core.config import RelayConfig
    from idrelay.core.targets import get_target
    from idrelay.core.upstream import UpstreamClient

    transport.add("POST", INAT_URL, resp(503, b"busy"))
    cfg = RelayConfig(retry_delay_sec=30.0)
    client = UpstreamClient(cfg, get_target("inaturalist"), transport=transport)
    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()

    with pytest.raises(RequestCancelled):
        client.submit_for_identification(IMAGE_BYTES, TOKEN, cancel)

    assert len(transport.calls) == 1


def test_retry_policy_validation_and_retryable_statuses():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(delay_sec=-1)

    assert is_retryable_status(429)
    assert is_retryable_status(500)
    assert is_retryable_status(599)
    assert not is_retryable_status(400)
    assert not is_retryable_status(404)
    assert not is_retryable_status(200)
