"""idrelay API package.

FastAPI service exposing POST /identify, which relays an image URL to a
species-identification API.
"""

from .server import create_app  # noqa: F401
