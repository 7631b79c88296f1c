"""Schemas for the polling scan-session endpoints."""
from __future__ import annotations

import enum

from pydantic import BaseModel, Field


class ScanSessionStatus(str, enum.Enum):
    WAITING = "waiting"
    SCANNED = "scanned"
    EXPIRED = "expired"


class ScanSessionCreated(BaseModel):
    success: bool = True
    session_id: str


class ScanSessionUpdateRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    status: ScanSessionStatus | None = None
    participant_id: str | None = None


class ScanSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    status: ScanSessionStatus
    participant_id: str | None = None
