from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from idrelay.core.errors import PayloadError

CRLF = b"\r\n"


@dataclass(frozen=True, slots=True)
class MultipartPayload:
    """An encoded multipart/form-data body.

    Single-use: build a fresh payload for every send.
    """

    body: bytes
    boundary: str

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"


def _check_name(kind: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise PayloadError(details=f"{kind} must be a non-empty string")
    if any(c in value for c in ('"', "\r", "\n")):
        raise PayloadError(details=f"{kind} contains forbidden characters: {value!r}")
    return value


def _new_boundary() -> str:
    return "----idrelay-" + uuid.uuid4().hex


def build_multipart(
    image: bytes,
    fields: Mapping[str, str],
    *,
    file_field: str,
    filename: str,
    content_type: str = "image/jpeg",
    boundary: Optional[str] = None,
) -> MultipartPayload:
    """Encode auxiliary fields followed by one binary file part.

    Fields are written in mapping order, before the file part; some upstreams
    expect the API key as the first field.

    Raises PayloadError if a name or value cannot be encoded.
    """

    _check_name("file field", file_field)
    _check_name("filename", filename)
    if not isinstance(image, (bytes, bytearray)):
        raise PayloadError(details="image must be bytes")

    bnd = boundary or _new_boundary()
    # A boundary must never appear inside the content it delimits.
    while bnd.encode("ascii") in image:
        if boundary is not None:
            raise PayloadError(details="supplied boundary occurs inside image data")
        bnd = _new_boundary()

    try:
        delim = f"--{bnd}".encode("ascii")
        parts: List[bytes] = []
        for name, value in fields.items():
            _check_name("field name", name)
            if not isinstance(value, str):
                raise PayloadError(details=f"field {name!r} must be a string")
            parts.append(delim + CRLF)
            parts.append(f'Content-Disposition: form-data; name="{name}"'.encode("utf-8") + CRLF + CRLF)
            parts.append(value.encode("utf-8"))
            parts.append(CRLF)

        parts.append(delim + CRLF)
        parts.append(
            f'Content-Disposition: form-data; name="{file_field}"; filename="{filename}"'.encode("utf-8")
            + CRLF
        )
        parts.append(f"Content-Type: {content_type}".encode("utf-8") + CRLF + CRLF)
        parts.append(bytes(image))
        parts.append(CRLF)
        parts.append(delim + b"--" + CRLF)
        body = b"".join(parts)
    except MemoryError as e:
        raise PayloadError(details="out of memory while encoding payload") from e
    except UnicodeEncodeError as e:
        raise PayloadError(details=str(e)) from e

    return MultipartPayload(body=body, boundary=bnd)


def boundary_from_content_type(content_type: str) -> Optional[str]:
    """Extract the boundary parameter from a multipart Content-Type header."""

    for param in content_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "boundary":
            return value.strip('"')
    return None


def parse_multipart(body: bytes, boundary: str) -> Dict[str, Tuple[Optional[str], bytes]]:
    """Split a multipart body into {name: (filename, data)}.

    Only understands what build_multipart produces; meant for inspecting
    payloads, not for parsing arbitrary client uploads.
    """

    delim = b"--" + boundary.encode("ascii")
    out: Dict[str, Tuple[Optional[str], bytes]] = {}
    for chunk in body.split(delim)[1:]:
        if chunk.startswith(b"--"):
            break
        chunk = chunk[len(CRLF):] if chunk.startswith(CRLF) else chunk
        head, sep, data = chunk.partition(CRLF + CRLF)
        if not sep:
            continue
        if data.endswith(CRLF):
            data = data[: -len(CRLF)]
        name: Optional[str] = None
        filename: Optional[str] = None
        for line in head.decode("utf-8", errors="replace").split("\r\n"):
            if not line.lower().startswith("content-disposition:"):
                continue
            for param in line.split(";")[1:]:
                key, _, value = param.strip().partition("=")
                if key == "name":
                    name = value.strip('"')
                elif key == "filename":
                    filename = value.strip('"')
        if name is not None:
            out[name] = (filename, data)
    return out
