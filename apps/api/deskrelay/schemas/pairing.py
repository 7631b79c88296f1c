"""Data contracts for pairing token issuance."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PairingTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    desk_id: str = Field(..., alias="deskId", description="Opaque desk identifier")
    signature: str = Field(..., description="Secret proving possession of the token")
    scanner_url: str = Field(..., alias="scannerUrl", description="URL the phone opens to join")


class RelayInfo(BaseModel):
    message: str
    path: str
    events: list[str]
