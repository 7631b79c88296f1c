"""Scanner-side pairing client for the phone."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
from contextlib import suppress
from typing import Any, AsyncIterable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..schemas.events import ServerEvent, envelope
from ..services.pairing_url import PairingPayload, parse_scanner_url

logger = logging.getLogger(__name__)

PARTICIPANT_DIGITS = re.compile(r"\d{4}$")
PARTICIPANT_PREFIX = "INF"
UNEXPECTED_REPLY = "Unexpected reply from relay"


class ScannerJoinError(RuntimeError):
    """Raised when the relay refuses the scanner; a new code has to be scanned."""


class ScannerState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SCANNING = "scanning"
    AWAITING_RESUME = "awaiting-resume"
    FAILED = "failed"
    CLOSED = "closed"


def extract_participant_id(decoded_text: str) -> Optional[str]:
    """Turn decoded code text into a participant id, or None if it is not one."""

    match = PARTICIPANT_DIGITS.search(decoded_text.strip())
    if match is None:
        return None
    return f"{PARTICIPANT_PREFIX}{match.group(0)}"


class ScannerClient:
    """Join a desk's room and forward participant ids decoded from camera frames.

    Capture stops after every successful decode and restarts only when the desk
    sends ``resume-scanning``.
    """

    def __init__(self, payload: PairingPayload) -> None:
        self.payload = payload
        self.state = ScannerState.IDLE
        self.desk_present = False
        self.last_acknowledged: Optional[str] = None
        self.last_error: Optional[str] = None
        self.sent: list[str] = []

        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._capture = asyncio.Event()

    @classmethod
    def from_url(cls, url: str) -> "ScannerClient":
        return cls(parse_scanner_url(url))

    @property
    def capturing(self) -> bool:
        return self.state is ScannerState.SCANNING

    async def connect(self) -> None:
        """Open the relay socket and join; raises ``ScannerJoinError`` on rejection."""

        if self.state is ScannerState.FAILED:
            raise ScannerJoinError(self.last_error or "Pairing rejected, scan a new code")

        self.state = ScannerState.CONNECTING
        self._ws = await websockets.connect(self.payload.endpoint)
        await self._ws.send(
            json.dumps(
                envelope("join-scanner", {"deskId": self.payload.desk_id, "signature": self.payload.signature})
            )
        )

        raw = await self._ws.recv()
        try:
            reply = json.loads(raw)
        except (TypeError, ValueError):
            reply = None
        if not isinstance(reply, dict):
            reply = {"data": {"message": UNEXPECTED_REPLY}}
        if reply.get("event") != ServerEvent.SCANNER_JOINED.value:
            data = reply.get("data")
            message = str((data if isinstance(data, dict) else {}).get("message", "Pairing rejected"))
            self._fail(message)
            await self._ws.close()
            self._ws = None
            raise ScannerJoinError(message)

        self.desk_present = True
        self._start_capture()
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Scanner joined desk %s", self.payload.desk_id)

    async def run(self, frames: AsyncIterable[str]) -> None:
        """Consume decoded frame text until the source ends or the client closes."""

        iterator = frames.__aiter__()
        while self.state in {ScannerState.SCANNING, ScannerState.AWAITING_RESUME}:
            await self._capture.wait()
            if self.state is not ScannerState.SCANNING:
                break
            try:
                text = await iterator.__anext__()
            except StopAsyncIteration:
                break
            unique_id = extract_participant_id(text)
            if unique_id is None:
                logger.debug("Ignoring code without a participant id")
                continue
            self._stop_capture()
            try:
                await self._ws.send(json.dumps(envelope("scan-participant", {"uniqueId": unique_id})))
            except ConnectionClosed:
                logger.info("Relay connection closed before %s was sent", unique_id)
                if self.state is not ScannerState.FAILED:
                    self.state = ScannerState.CLOSED
                self._capture.set()
                break
            self.sent.append(unique_id)
            logger.info("Sent %s to desk", unique_id)

    async def close(self) -> None:
        if self._receive_task is not None:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self.state is not ScannerState.FAILED:
            self.state = ScannerState.CLOSED
        self._capture.set()

    async def handle_event(self, frame: dict[str, Any]) -> None:
        try:
            event = ServerEvent(frame.get("event"))
        except ValueError:
            logger.debug("Ignoring unknown event %r", frame.get("event"))
            return
        data = frame.get("data") or {}

        if event is ServerEvent.RESUME_SCANNING:
            self._start_capture()
        elif event is ServerEvent.SCAN_ACKNOWLEDGED:
            self.last_acknowledged = data.get("uniqueId")
        elif event is ServerEvent.CLEAR_SCAN:
            self.last_acknowledged = None
        elif event is ServerEvent.DESK_DISCONNECTED:
            self.desk_present = False
            logger.warning("Desk disconnected")
        elif event is ServerEvent.REPLACED:
            self._fail("Another scanner took over this desk")
        elif event is ServerEvent.ERROR:
            self.last_error = str(data.get("message", "Unknown error"))
            logger.error("Relay error: %s", self.last_error)
        else:
            logger.debug("Ignoring %s on scanner", event.value)

    def _start_capture(self) -> None:
        self.state = ScannerState.SCANNING
        self._capture.set()

    def _stop_capture(self) -> None:
        self.state = ScannerState.AWAITING_RESUME
        self._capture.clear()

    def _fail(self, message: str) -> None:
        self.last_error = message
        self.state = ScannerState.FAILED
        self._capture.set()
        logger.error("Scanner pairing failed: %s", message)

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    continue
                if isinstance(frame, dict):
                    await self.handle_event(frame)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            logger.info("Relay connection closed")
        except Exception:
            logger.exception("Scanner receive loop failed")
        if self.state not in {ScannerState.FAILED, ScannerState.CLOSED}:
            self.state = ScannerState.CLOSED
        self._capture.set()
