from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import List

from idrelay.core.config import RelayConfig
from idrelay.core.errors import RelayError
from idrelay.core.logfmt import configure_logging
from idrelay.core.relay import RelayHandler
from idrelay.core.targets import TARGETS, get_target
from idrelay.core.upstream import UpstreamClient


def _config_from_args(args: argparse.Namespace) -> RelayConfig:
    cfg = RelayConfig.from_env()
    if getattr(args, "target", None):
        cfg = replace(cfg, target=args.target)
    return cfg


def _build_handler(cfg: RelayConfig) -> RelayHandler:
    target = get_target(cfg.target, endpoint_override=cfg.upstream_url)
    return RelayHandler(cfg, UpstreamClient(cfg, target))


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the relay API server.

    Port defaults to $PORT, then 8080.
    """

    try:
        import uvicorn
    except ImportError as e:
        print(f"error: uvicorn is required to serve the API: {e}", file=sys.stderr)
        return 2

    from idrelay.api.server import create_app

    cfg = _config_from_args(args)
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.host:
        cfg = replace(cfg, host=args.host)

    configure_logging(cfg.log_level)
    app = create_app(cfg)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=args.log_level)
    return 0


def cmd_check_upstream(args: argparse.Namespace) -> int:
    """Probe the configured upstream and report whether it is reachable."""

    cfg = _config_from_args(args)
    handler = _build_handler(cfg)
    alive = handler.client.check_availability()
    print(json.dumps({"target": handler.target.name, "url": handler.target.availability_url, "alive": alive}))
    return 0 if alive else 2


def cmd_identify(args: argparse.Namespace) -> int:
    """Run the relay pipeline in-process and print the upstream JSON."""

    cfg = _config_from_args(args)
    if args.no_check:
        cfg = replace(cfg, availability_check=False)
    handler = _build_handler(cfg)
    try:
        request = handler.build_request(args.image_url, api_key=args.api_key, authorization=args.token)
        result = handler.handle(request)
    except RelayError as e:
        out = {"error": e.message}
        if e.details:
            out["details"] = e.details
        print(json.dumps(out), file=sys.stderr)
        return 2
    sys.stdout.write(result.body.decode("utf-8", errors="replace"))
    sys.stdout.write("\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""

    p = argparse.ArgumentParser(prog="idrelay", description="Species-identification relay")
    p.add_argument("--verbose", "-v", action="store_true", help="Log pipeline stages to stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    targets = sorted(TARGETS)

    sv = sub.add_parser("serve", help="Run the FastAPI relay server")
    sv.add_argument("--host", default=None, help="Bind host (default: $IDRELAY_HOST or 0.0.0.0)")
    sv.add_argument("--port", type=int, default=None, help="Bind port (default: $PORT or 8080)")
    sv.add_argument("--target", choices=targets, default=None, help="Upstream API")
    sv.add_argument("--log-level", default="info", help="Uvicorn log level")
    sv.set_defaults(func=cmd_serve)

    cu = sub.add_parser("check-upstream", help="Probe the upstream identification API")
    cu.add_argument("--target", choices=targets, default=None, help="Upstream API")
    cu.set_defaults(func=cmd_check_upstream)

    ident = sub.add_parser("identify", help="Relay one image URL and print the upstream response")
    ident.add_argument("image_url", help="Publicly reachable image URL")
    ident.add_argument("--api-key", default=None, help="Upstream API key (form-field auth)")
    ident.add_argument("--token", default=None, help="Authorization header value (header auth)")
    ident.add_argument("--target", choices=targets, default=None, help="Upstream API")
    ident.add_argument("--no-check", action="store_true", help="Skip the availability pre-check")
    ident.set_defaults(func=cmd_identify)

    return p


def main(argv: List[str] | None = None) -> int:
    """CLI entry."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose and args.cmd != "serve":
        configure_logging(logging.INFO)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
