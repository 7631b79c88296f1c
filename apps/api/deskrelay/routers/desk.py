"""Desk pairing token issuance."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..core.config import Settings, settings
from ..schemas.pairing import PairingTokenResponse
from ..services.pairing_url import PairingPayload, build_scanner_url
from ..services.relay import RelayServer

logger = logging.getLogger(__name__)

router = APIRouter()

UNAVAILABLE_MESSAGE = "Desk session service not available"


@router.post(
    "/session",
    response_model=PairingTokenResponse,
    responses={503: {"description": "Pairing store unavailable"}},
)
async def create_desk_session(request: Request) -> PairingTokenResponse | JSONResponse:
    """Issue a pairing token for a desk entering scanner mode."""

    relay: RelayServer | None = getattr(request.app.state, "relay", None)
    if relay is None:
        logger.error("Pairing requested but no relay is attached to the app")
        return JSONResponse(status_code=503, content={"success": False, "message": UNAVAILABLE_MESSAGE})

    config: Settings = getattr(request.app.state, "settings", settings)
    token = relay.pairing_store.issue()
    scanner_url = build_scanner_url(
        config.public_base_url,
        PairingPayload(desk_id=token.desk_id, signature=token.signature, endpoint=config.relay_url),
    )
    return PairingTokenResponse(desk_id=token.desk_id, signature=token.signature, scanner_url=scanner_url)
