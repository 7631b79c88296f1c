"""Wire contracts for the desk/scanner relay socket.

Every frame is a JSON object ``{"event": <name>, "data": {...}}``. Inbound
frames are validated into one of the ``ClientEvent`` variants; anything else is
rejected as malformed.
"""
from __future__ import annotations

import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Role(str, enum.Enum):
    DESK = "desk"
    SCANNER = "scanner"


class ServerEvent(str, enum.Enum):
    DESK_JOINED = "desk-joined"
    SCANNER_JOINED = "scanner-joined"
    SCANNER_CONNECTED = "scanner-connected"
    SCANNER_DISCONNECTED = "scanner-disconnected"
    DESK_DISCONNECTED = "desk-disconnected"
    SCAN_ACKNOWLEDGED = "scan-acknowledged"
    RESUME_SCANNING = "resume-scanning"
    CLEAR_SCAN = "clear-scan"
    REPLACED = "replaced"
    ERROR = "error"


class JoinPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    desk_id: str = Field(..., alias="deskId", min_length=1)
    signature: str = Field(..., min_length=1)


class ScanPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    unique_id: str = Field(..., alias="uniqueId", min_length=1)


class JoinDesk(BaseModel):
    event: Literal["join-desk"]
    data: JoinPayload


class JoinScanner(BaseModel):
    event: Literal["join-scanner"]
    data: JoinPayload


class ScanParticipant(BaseModel):
    event: Literal["scan-participant"]
    data: ScanPayload


class ResumeScanning(BaseModel):
    event: Literal["resume-scanning"]
    data: dict[str, Any] = Field(default_factory=dict)


class ClearScan(BaseModel):
    event: Literal["clear-scan"]
    data: dict[str, Any] = Field(default_factory=dict)


ClientEvent = Annotated[
    Union[JoinDesk, JoinScanner, ScanParticipant, ResumeScanning, ClearScan],
    Field(discriminator="event"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


def parse_client_event(raw: object) -> ClientEvent:
    """Validate a decoded JSON frame into a client event.

    Raises ``pydantic.ValidationError`` when the frame matches no variant.
    """

    return _client_event_adapter.validate_python(raw)


def envelope(event: ServerEvent | str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build an outbound frame."""

    name = event.value if isinstance(event, ServerEvent) else event
    return {"event": name, "data": data or {}}


def error(message: str) -> dict[str, Any]:
    return envelope(ServerEvent.ERROR, {"message": message})
