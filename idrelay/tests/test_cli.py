from __future__ import annotations

import json

import pytest

from conftest import IMAGE_BYTES, IMAGE_URL, INAT_URL, MO_URL, resp
from idrelay.cli import main as cli
from idrelay.core.relay import RelayHandler


@pytest.fixture
def fake_handler(monkeypatch, make_client):
    built = {}

    def _build(cfg):
        client = make_client(cfg.target, availability_check=cfg.availability_check)
        built["handler"] = RelayHandler(client.config, client)
        return built["handler"]

    monkeypatch.setattr(cli, "_build_handler", _build)
    monkeypatch.delenv("IDRELAY_TARGET", raising=False)
    return built


def test_identify_prints_upstream_json(fake_handler, transport, capsys):
    transport.add("GET", INAT_URL, resp(405))
    transport.add("GET", IMAGE_URL, resp(200, IMAGE_BYTES))
    transport.add("POST", INAT_URL, resp(200, b'{"results": []}'))

    rc = cli.main(["identify", IMAGE_URL, "--token", "JWT t"])

    assert rc == 0
    assert json.loads(capsys.readouterr().out) == {"results": []}


def test_identify_reports_errors_on_stderr(fake_handler, transport, capsys):
    rc = cli.main(["identify", IMAGE_URL, "--target", "mushroom-observer"])

    assert rc == 2
    err = json.loads(capsys.readouterr().err)
    assert err["error"] == "apiKey is required"
    assert transport.calls == []


def test_identify_can_skip_availability_check(fake_handler, transport, capsys):
    transport.add("GET", IMAGE_URL, resp(200, IMAGE_BYTES))
    transport.add("POST", MO_URL, resp(200, b"{}"))

    rc = cli.main(["identify", IMAGE_URL, "--target", "mushroom-observer", "--api-key", "k", "--no-check"])

    assert rc == 0
    assert transport.calls_to(MO_URL, "GET") == []


def test_check_upstream_exit_code(fake_handler, transport, capsys):
    transport.add("GET", INAT_URL, resp(503))

    assert cli.main(["check-upstream"]) == 2
    assert json.loads(capsys.readouterr().out)["alive"] is False


def test_parser_rejects_unknown_target():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["identify", IMAGE_URL, "--target", "plantnet"])
