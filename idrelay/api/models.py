from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorEnvelope(BaseModel):
    """Standard API error payload."""

    error: str
    details: Optional[str] = None


class IdentifyIn(BaseModel):
    """Inbound identification request body."""

    model_config = ConfigDict(extra="ignore")

    imageUrl: str
    apiKey: Optional[str] = None


class HealthOut(BaseModel):
    ok: bool
    target: str
    availability_check: bool
