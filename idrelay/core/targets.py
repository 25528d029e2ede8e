from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class AuthStrategy(str, Enum):
    """Where the upstream credential goes."""

    NONE = "none"
    HEADER = "header"  # Authorization: <token>, verbatim
    JWT_HEADER = "jwt_header"  # Authorization: JWT <token>
    FORM_FIELD = "form_field"  # api_key form field, written first


@dataclass(frozen=True, slots=True)
class Credentials:
    """Credential material for one upstream call.

    Security notes:
    - repr hides the secret so it never lands in logs or tracebacks.
    """

    api_key: Optional[str] = field(default=None, repr=False)
    auth_token: Optional[str] = field(default=None, repr=False)

    @property
    def secret(self) -> Optional[str]:
        """Header credential: the Authorization value before the api key."""

        return self.auth_token or self.api_key

    @property
    def form_secret(self) -> Optional[str]:
        """Form-field credential: the api key before the Authorization value."""

        return self.api_key or self.auth_token


@dataclass(frozen=True, slots=True)
class UpstreamTarget:
    """A species-identification API the relay can forward to.

    Everything that differs between upstreams lives here so that the
    pipeline itself stays the same for all of them.
    """

    name: str
    endpoint: str
    file_field: str
    filename: str = "image.jpg"
    auth: AuthStrategy = AuthStrategy.NONE
    static_fields: Tuple[Tuple[str, str], ...] = ()
    probe_url: Optional[str] = None
    requires_api_key: bool = False
    api_key_field: str = "api_key"

    @property
    def availability_url(self) -> str:
        return self.probe_url or self.endpoint

    def build_fields(self, credentials: Credentials) -> Dict[str, str]:
        """Auxiliary form fields in wire order."""

        fields: Dict[str, str] = {}
        if self.auth is AuthStrategy.FORM_FIELD and credentials.form_secret:
            fields[self.api_key_field] = credentials.form_secret
        for name, value in self.static_fields:
            fields.setdefault(name, value)
        return fields

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        token = credentials.secret
        if not token:
            return {}
        if self.auth is AuthStrategy.HEADER:
            return {"Authorization": token}
        if self.auth is AuthStrategy.JWT_HEADER:
            if token.startswith("JWT "):
                return {"Authorization": token}
            return {"Authorization": f"JWT {token}"}
        return {}


TARGETS: Mapping[str, UpstreamTarget] = {
    "inaturalist": UpstreamTarget(
        name="inaturalist",
        endpoint="https://api.inaturalist.org/v2/computervision/score_image",
        file_field="images",
        auth=AuthStrategy.HEADER,
    ),
    "inaturalist-v1": UpstreamTarget(
        name="inaturalist-v1",
        endpoint="https://api.inaturalist.org/v1/computervision/score_image",
        file_field="image",
        auth=AuthStrategy.JWT_HEADER,
        static_fields=(("observation_fields", "{}"),),
    ),
    "mushroom-observer": UpstreamTarget(
        name="mushroom-observer",
        endpoint="https://mushroomobserver.org/api2",
        file_field="file",
        auth=AuthStrategy.FORM_FIELD,
        static_fields=(("method", "identify_image"),),
        requires_api_key=True,
    ),
}


def get_target(name: str, *, endpoint_override: Optional[str] = None) -> UpstreamTarget:
    """Look up a built-in target by name.

    Raises ValueError for unknown names.
    """

    key = (name or "").strip().lower()
    try:
        target = TARGETS[key]
    except KeyError:
        known = ", ".join(sorted(TARGETS))
        raise ValueError(f"unknown upstream target {name!r} (known: {known})") from None
    if endpoint_override:
        # An overridden endpoint is also what gets probed.
        target = replace(target, endpoint=endpoint_override, probe_url=None)
    return target
