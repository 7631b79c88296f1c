"""Desk/scanner relay socket endpoint."""
from __future__ import annotations

import asyncio
import json
import logging
from uuid import uuid4

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from ..core.config import Settings, settings
from ..schemas.events import ServerEvent
from ..schemas.pairing import RelayInfo
from ..services.relay import RelayConnection, RelayServer

logger = logging.getLogger(__name__)

router = APIRouter()

REPLACED_CLOSE_CODE = 4000


@router.get("/api/socket", response_model=RelayInfo, tags=["relay"])
async def relay_info(request: Request) -> RelayInfo:
    """Describe how to reach the relay socket."""

    config: Settings = getattr(request.app.state, "settings", settings)
    return RelayInfo(
        message="Desk relay endpoint. Connect via WebSocket and send JSON event frames.",
        path=config.relay_path,
        events=[event.value for event in ServerEvent],
    )


def _decode_frame(message: dict) -> object:
    """Return the parsed JSON of a text frame; None for binary or undecodable frames."""

    text = message.get("text")
    if text is None:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


async def relay_endpoint(websocket: WebSocket) -> None:
    """Bind desk and scanner connections and relay scan events between them.

    Mounted by ``create_app`` at the configured relay path.
    """

    relay: RelayServer | None = getattr(websocket.app.state, "relay", None)
    if relay is None:
        await websocket.close(code=1011, reason="Relay unavailable")
        return

    await websocket.accept()
    send_lock = asyncio.Lock()

    async def send(frame: dict) -> None:
        async with send_lock:
            await websocket.send_json(frame)

    async def close() -> None:
        await websocket.close(code=REPLACED_CLOSE_CODE, reason="Replaced by a newer connection")

    connection = RelayConnection(connection_id=str(uuid4()), send=send, close=close)
    logger.info("Client connected: %s", connection.connection_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            await relay.handle_raw(connection, _decode_frame(message))
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001 - any transport failure ends the connection
        logger.exception("Relay connection %s failed", connection.connection_id)
    finally:
        logger.info("Client disconnected: %s (%s)", connection.connection_id, connection.role)
        await relay.disconnect(connection)
