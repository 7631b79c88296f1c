"""Participant records as returned by the registration backend."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Participant(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    unique_id: str = Field(..., alias="uniqueId")
    name: str | None = None
    email: str | None = None
    college: str | None = None
    verified: bool = False
    general_fee_paid: bool = Field(default=False, alias="generalFeePaid")
    workshop_fee_paid: bool = Field(default=False, alias="workshopFeePaid")
    kit: bool = False


class KitEligibility(BaseModel):
    can_provide: bool
    reasons: list[str] = Field(default_factory=list)
