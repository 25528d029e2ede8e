from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_PORT = 8080
DEFAULT_USER_AGENT = "Mushroom Identifier/1.0"


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.environ.get(name, "").strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable.

    Invalid values fall back to the default.
    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class HttpTimeouts:
    """Per-operation timeouts, in seconds.

    - handshake: TCP connect + TLS handshake
    - header: wait for the response status line and headers
    - total: deadline for the whole exchange, body included
    """

    total: float
    handshake: float
    header: float

    @staticmethod
    def from_total(total: float) -> "HttpTimeouts":
        total = max(0.001, float(total))
        return HttpTimeouts(total=total, handshake=total / 3.0, header=total * 2.0 / 3.0)


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Process-wide relay configuration, resolved once at startup.

    Security notes:
    - upstream_token is a server-side secret. It is never logged and never
      embedded in source; set IDRELAY_UPSTREAM_TOKEN instead.
    """

    target: str = "inaturalist"
    upstream_url: Optional[str] = None
    upstream_token: Optional[str] = field(default=None, repr=False)
    availability_check: bool = True
    availability_timeout_sec: float = 10.0
    download_timeout_sec: float = 180.0
    submit_timeout_sec: float = 60.0
    max_attempts: int = 3
    retry_delay_sec: float = 5.0
    max_image_bytes: int = 25 * 1024 * 1024
    user_agent: str = DEFAULT_USER_AGENT
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    disconnect_poll_sec: float = 0.5

    @staticmethod
    def from_env() -> "RelayConfig":
        """Build a config from PORT and the IDRELAY_* environment variables."""

        return RelayConfig(
            target=_env_str("IDRELAY_TARGET", "inaturalist"),
            upstream_url=_env_str("IDRELAY_UPSTREAM_URL"),
            upstream_token=_env_str("IDRELAY_UPSTREAM_TOKEN"),
            availability_check=_env_bool("IDRELAY_AVAILABILITY_CHECK", True),
            availability_timeout_sec=_env_float("IDRELAY_AVAILABILITY_TIMEOUT_SEC", 10.0),
            download_timeout_sec=_env_float("IDRELAY_DOWNLOAD_TIMEOUT_SEC", 180.0),
            submit_timeout_sec=_env_float("IDRELAY_SUBMIT_TIMEOUT_SEC", 60.0),
            max_attempts=max(1, _env_int("IDRELAY_MAX_ATTEMPTS", 3)),
            retry_delay_sec=max(0.0, _env_float("IDRELAY_RETRY_DELAY_SEC", 5.0)),
            max_image_bytes=_env_int("IDRELAY_MAX_IMAGE_BYTES", 25 * 1024 * 1024),
            user_agent=_env_str("IDRELAY_USER_AGENT", DEFAULT_USER_AGENT),
            host=_env_str("IDRELAY_HOST", "0.0.0.0"),
            port=_env_int("PORT", DEFAULT_PORT),
            log_level=_env_str("IDRELAY_LOG_LEVEL", "INFO").upper(),
            disconnect_poll_sec=_env_float("IDRELAY_DISCONNECT_POLL_SEC", 0.5),
        )

    @property
    def availability_timeouts(self) -> HttpTimeouts:
        return HttpTimeouts.from_total(self.availability_timeout_sec)

    @property
    def download_timeouts(self) -> HttpTimeouts:
        return HttpTimeouts.from_total(self.download_timeout_sec)

    @property
    def submit_timeouts(self) -> HttpTimeouts:
        return HttpTimeouts.from_total(self.submit_timeout_sec)
