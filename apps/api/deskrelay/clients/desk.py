"""Desk-side pairing client.

The desk requests a pairing token, shows the scanner URL to the operator, holds
the relay socket open as ``desk`` and resolves every acknowledged scan against
the participant backend.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..schemas.events import ServerEvent, envelope
from ..schemas.participants import KitEligibility, Participant
from ..services.pairing_url import PairingPayload, build_scanner_url, parse_scanner_url
from ..services.participants import ParticipantDirectory, ParticipantDirectoryError, kit_eligibility
from ..services.relay import INVALID_SESSION

logger = logging.getLogger(__name__)

PARTICIPANT_PREFIX = "INF"
# Presentation-only guess; the relay itself never times a scanner out.
STALE_AFTER_SECONDS = 120


class PairingRequestError(RuntimeError):
    """Raised when the server refuses or fails to issue a pairing token."""


class DeskState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    WAITING_FOR_SCANNER = "waiting-for-scanner"
    SCANNER_CONNECTED = "scanner-connected"


@dataclass(slots=True)
class ScanResult:
    unique_id: str
    short_id: str
    participant: Optional[Participant] = None
    eligibility: Optional[KitEligibility] = None
    error: Optional[str] = None


ScanHandler = Callable[[ScanResult], Awaitable[None]]
ErrorHandler = Callable[[str], Awaitable[None]]


class PairingStateFile:
    """Persist the active pairing so a restarted desk can rejoin the same room."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Optional[PairingPayload]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return PairingPayload(desk_id=raw["deskId"], signature=raw["signature"], endpoint=raw["endpoint"])
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable pairing state at %s", self.path)
            self.clear()
            return None

    def save(self, payload: PairingPayload) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps({"deskId": payload.desk_id, "signature": payload.signature, "endpoint": payload.endpoint}),
            encoding="utf-8",
        )

    def clear(self) -> None:
        with suppress(FileNotFoundError):
            self.path.unlink()


class DeskClient:
    """Drive the desk half of a pairing."""

    def __init__(
        self,
        api_base_url: str,
        directory: ParticipantDirectory,
        *,
        state_file: PairingStateFile | None = None,
        on_scan: ScanHandler | None = None,
        on_error: ErrorHandler | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.directory = directory
        self.state_file = state_file
        self._on_scan = on_scan
        self._on_error = on_error
        self._http_transport = http_transport
        self._clock = clock

        self.state = DeskState.IDLE
        self.pairing: Optional[PairingPayload] = None
        self.scanner_url: Optional[str] = None
        self.current_scan: Optional[ScanResult] = None
        self.last_error: Optional[str] = None
        self.last_scan_at: Optional[float] = None
        self.scanner_connected_at: Optional[float] = None

        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None

    @property
    def scanner_connected(self) -> bool:
        return self.state is DeskState.SCANNER_CONNECTED

    async def enable(self) -> str:
        """Request a fresh token, persist it and join the relay. Returns the scanner URL."""

        self.state = DeskState.REQUESTING
        try:
            body = await self._request_pairing()
            scanner_url = str(body["scannerUrl"])
            payload = parse_scanner_url(scanner_url)
        except (PairingRequestError, KeyError, ValueError) as exc:
            self.state = DeskState.IDLE
            if isinstance(exc, PairingRequestError):
                raise
            raise PairingRequestError(f"Malformed desk session response: {exc}") from exc

        if self.state_file is not None:
            self.state_file.save(payload)
        await self._join(payload, scanner_url=scanner_url)
        return scanner_url

    async def restore(self) -> bool:
        """Rejoin a persisted pairing without asking for a new token."""

        if self.state_file is None:
            return False
        payload = self.state_file.load()
        if payload is None:
            return False
        await self._join(payload)
        return True

    async def disable(self) -> None:
        """Leave scanner mode; the relay cleans the room up on disconnect."""

        await self._close_socket()
        self._abandon_pairing()
        logger.info("Scanner mode disabled")

    async def resume_scanning(self) -> None:
        """Tell the phone the previous scan was consumed."""

        self.current_scan = None
        await self._send("resume-scanning")

    async def clear_scan(self) -> None:
        await self._send("clear-scan")

    def is_stale(self, now: float | None = None) -> bool:
        """Guess whether a 'connected' scanner has silently gone away."""

        if self.state is not DeskState.SCANNER_CONNECTED:
            return False
        reference = self.last_scan_at or self.scanner_connected_at
        if reference is None:
            return False
        current = self._clock() if now is None else now
        return current - reference > STALE_AFTER_SECONDS

    async def handle_event(self, frame: dict[str, Any]) -> None:
        """Apply one server frame to the desk state."""

        try:
            event = ServerEvent(frame.get("event"))
        except ValueError:
            logger.debug("Ignoring unknown event %r", frame.get("event"))
            return
        data = frame.get("data") or {}

        if event is ServerEvent.DESK_JOINED:
            if self.state is not DeskState.SCANNER_CONNECTED:
                self.state = DeskState.WAITING_FOR_SCANNER
            logger.info("Scanner mode enabled for desk %s", data.get("deskId"))
        elif event is ServerEvent.SCANNER_CONNECTED:
            self.state = DeskState.SCANNER_CONNECTED
            self.scanner_connected_at = self._clock()
            logger.info("Mobile scanner connected")
        elif event is ServerEvent.SCANNER_DISCONNECTED:
            self.state = DeskState.WAITING_FOR_SCANNER
            self.scanner_connected_at = None
            logger.warning("Mobile scanner disconnected")
        elif event is ServerEvent.SCAN_ACKNOWLEDGED:
            await self._resolve_scan(str(data.get("uniqueId", "")))
        elif event is ServerEvent.CLEAR_SCAN:
            self.current_scan = None
        elif event is ServerEvent.REPLACED:
            logger.warning("Desk connection replaced by a newer desk")
            self.state = DeskState.IDLE
            self.scanner_connected_at = None
        elif event is ServerEvent.ERROR:
            message = str(data.get("message", "Unknown error"))
            self.last_error = message
            logger.error("Relay error: %s", message)
            if message == INVALID_SESSION:
                await self._drop_rejected_pairing()
            if self._on_error:
                await self._on_error(message)
        else:
            logger.debug("Ignoring %s on desk", event.value)

    async def _request_pairing(self) -> dict[str, Any]:
        async with httpx.AsyncClient(base_url=self.api_base_url, transport=self._http_transport) as client:
            try:
                response = await client.post("/api/desk/session")
            except httpx.HTTPError as exc:
                raise PairingRequestError(f"Failed to create desk session: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.is_error or not body.get("success"):
            message = body.get("message")
            raise PairingRequestError(message or f"Failed to create desk session ({response.status_code})")
        return body

    async def _join(self, payload: PairingPayload, scanner_url: str | None = None) -> None:
        """Open the relay socket and send ``join-desk``; the state moves on ``desk-joined``."""

        await self._close_socket()
        self.pairing = payload
        self.scanner_url = scanner_url or build_scanner_url(self.api_base_url, payload)
        self.state = DeskState.REQUESTING
        try:
            self._ws = await websockets.connect(payload.endpoint)
            await self._ws.send(
                json.dumps(envelope("join-desk", {"deskId": payload.desk_id, "signature": payload.signature}))
            )
        except (OSError, WebSocketException) as exc:
            await self._close_socket()
            self._abandon_pairing()
            raise PairingRequestError(f"Failed to reach relay at {payload.endpoint}: {exc}") from exc
        self._receive_task = asyncio.create_task(self._receive_loop())

    def _abandon_pairing(self) -> None:
        if self.state_file is not None:
            self.state_file.clear()
        self.state = DeskState.IDLE
        self.pairing = None
        self.scanner_url = None
        self.current_scan = None
        self.scanner_connected_at = None

    async def _drop_rejected_pairing(self) -> None:
        # Called from the receive loop; closing the socket ends that loop.
        self._abandon_pairing()
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except Exception as exc:  # noqa: BLE001 - the socket is being discarded anyway
                logger.debug("Error closing relay socket: %s", exc)

    async def _resolve_scan(self, unique_id: str) -> None:
        self.last_scan_at = self._clock()
        result = ScanResult(unique_id=unique_id, short_id=unique_id.removeprefix(PARTICIPANT_PREFIX))
        try:
            participant = await self.directory.get_participant(unique_id)
        except ParticipantDirectoryError as exc:
            result.error = str(exc)
            logger.warning("Lookup for %s failed: %s", unique_id, exc)
        else:
            result.participant = participant
            result.eligibility = kit_eligibility(participant)
        self.current_scan = result
        if self._on_scan:
            await self._on_scan(result)

    async def _send(self, event: str, data: dict[str, Any] | None = None) -> None:
        if self._ws is None:
            raise RuntimeError("Desk is not connected to the relay")
        await self._ws.send(json.dumps(envelope(event, data)))

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    logger.debug("Dropping non-JSON frame from relay")
                    continue
                if isinstance(frame, dict):
                    await self.handle_event(frame)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            logger.info("Relay connection closed")
        except Exception:
            logger.exception("Desk receive loop failed")
        if self.state is DeskState.SCANNER_CONNECTED:
            self.state = DeskState.WAITING_FOR_SCANNER
            self.scanner_connected_at = None

    async def _close_socket(self) -> None:
        if self._receive_task is not None:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as exc:  # noqa: BLE001 - the socket is being discarded anyway
                logger.debug("Error closing relay socket: %s", exc)
            self._ws = None
