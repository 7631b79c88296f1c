"""In-memory desk/scanner pairing relay.

A room pairs at most one desk connection with at most one scanner connection
under a shared desk id. All room mutations run under the registry lock and never
await while holding it; outbound frames are sent once the lock is released.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from ..schemas import events
from ..schemas.events import Role, ServerEvent
from .pairing_store import PairingStore

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
CloseCallable = Callable[[], Awaitable[None]]

INVALID_SESSION = "Invalid or expired desk session"
SESSION_NOT_FOUND = "Desk session not found"
ALREADY_JOINED = "Connection already joined"
ONLY_SCANNER_SCANS = "Only scanner can send scans"
DESK_NOT_CONNECTED = "Desk not connected"
ONLY_DESK_RESUMES = "Only desk can resume scanning"
SCANNER_NOT_CONNECTED = "Scanner not connected"
MALFORMED_EVENT = "Malformed event"


@dataclass(slots=True, eq=False)
class RelayConnection:
    """Transport wrapper plus the connection's (desk id, role) binding."""

    connection_id: str
    send: SendCallable
    close: Optional[CloseCallable] = None
    desk_id: Optional[str] = None
    role: Optional[Role] = None

    @property
    def is_bound(self) -> bool:
        return self.desk_id is not None

    def bind(self, desk_id: str, role: Role) -> None:
        self.desk_id = desk_id
        self.role = role

    def unbind(self) -> None:
        self.desk_id = None
        self.role = None


@dataclass(slots=True)
class Room:
    desk_id: str
    desk: Optional[RelayConnection] = None
    scanner: Optional[RelayConnection] = None

    def slot(self, role: Role) -> Optional[RelayConnection]:
        return self.desk if role is Role.DESK else self.scanner

    def assign(self, role: Role, connection: Optional[RelayConnection]) -> None:
        if role is Role.DESK:
            self.desk = connection
        else:
            self.scanner = connection

    def present(self) -> list[RelayConnection]:
        return [connection for connection in (self.desk, self.scanner) if connection is not None]


class RoomRegistry:
    """Rooms keyed by desk id, guarded by a single asyncio lock."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self.lock = asyncio.Lock()

    def __contains__(self, desk_id: object) -> bool:
        return desk_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def get(self, desk_id: Optional[str]) -> Optional[Room]:
        if desk_id is None:
            return None
        return self._rooms.get(desk_id)

    def get_or_create(self, desk_id: str) -> Room:
        room = self._rooms.get(desk_id)
        if room is None:
            room = Room(desk_id=desk_id)
            self._rooms[desk_id] = room
            logger.debug("Created room for desk %s", desk_id)
        return room

    def discard(self, desk_id: str) -> None:
        if self._rooms.pop(desk_id, None) is not None:
            logger.debug("Removed room for desk %s", desk_id)


@dataclass(slots=True)
class _Outcome:
    """Frames to send and a connection to close once the lock is released."""

    deliveries: list[tuple[RelayConnection, dict[str, Any]]] = field(default_factory=list)
    displaced: Optional[RelayConnection] = None

    def emit(self, connection: RelayConnection, frame: dict[str, Any]) -> None:
        self.deliveries.append((connection, frame))


class RelayServer:
    """Authenticate joins, bind connections to rooms and relay scan events."""

    def __init__(self, pairing_store: PairingStore, rooms: RoomRegistry | None = None) -> None:
        self.pairing_store = pairing_store
        self.rooms = rooms or RoomRegistry()

    async def handle_raw(self, connection: RelayConnection, raw: object) -> None:
        """Validate a decoded frame and dispatch it."""

        try:
            event = events.parse_client_event(raw)
        except ValidationError:
            logger.debug("Malformed event from connection %s", connection.connection_id)
            await self._deliver(_single(connection, events.error(MALFORMED_EVENT)))
            return
        await self.handle(connection, event)

    async def handle(self, connection: RelayConnection, event: events.ClientEvent) -> None:
        async with self.rooms.lock:
            if isinstance(event, events.JoinDesk):
                outcome = self._join_desk(connection, event.data)
            elif isinstance(event, events.JoinScanner):
                outcome = self._join_scanner(connection, event.data)
            elif isinstance(event, events.ScanParticipant):
                outcome = self._scan_participant(connection, event.data.unique_id)
            elif isinstance(event, events.ResumeScanning):
                outcome = self._resume_scanning(connection)
            elif isinstance(event, events.ClearScan):
                outcome = self._clear_scan(connection)
            else:  # pragma: no cover - the union is closed
                raise TypeError(f"Unhandled event {event!r}")
        await self._deliver(outcome)

    async def disconnect(self, connection: RelayConnection) -> None:
        """Release the connection's slot and notify the remaining peer."""

        outcome = _Outcome()
        async with self.rooms.lock:
            desk_id, role = connection.desk_id, connection.role
            connection.unbind()
            room = self.rooms.get(desk_id)
            if room is None or role is None or room.slot(role) is not connection:
                return
            room.assign(role, None)
            if role is Role.DESK:
                peer, notice = room.scanner, ServerEvent.DESK_DISCONNECTED
            else:
                peer, notice = room.desk, ServerEvent.SCANNER_DISCONNECTED
            if peer is not None:
                outcome.emit(peer, events.envelope(notice))
            else:
                self.rooms.discard(room.desk_id)
            logger.info("%s left desk %s", role.value.capitalize(), desk_id)
        await self._deliver(outcome)

    def _join_desk(self, connection: RelayConnection, payload: events.JoinPayload) -> _Outcome:
        rejection = self._check_join(connection, payload)
        if rejection is not None:
            return rejection

        room = self.rooms.get_or_create(payload.desk_id)
        outcome = self._bind(room, connection, Role.DESK)
        outcome.emit(connection, events.envelope(ServerEvent.DESK_JOINED, {"deskId": room.desk_id}))
        if room.scanner is not None:
            outcome.emit(connection, events.envelope(ServerEvent.SCANNER_CONNECTED))
        logger.info("Desk %s joined", room.desk_id)
        return outcome

    def _join_scanner(self, connection: RelayConnection, payload: events.JoinPayload) -> _Outcome:
        rejection = self._check_join(connection, payload)
        if rejection is not None:
            return rejection

        room = self.rooms.get(payload.desk_id)
        if room is None:
            logger.info("Scanner rejected, no room for desk %s", payload.desk_id)
            return _single(connection, events.error(SESSION_NOT_FOUND))

        outcome = self._bind(room, connection, Role.SCANNER)
        outcome.emit(connection, events.envelope(ServerEvent.SCANNER_JOINED, {"deskId": room.desk_id}))
        if room.desk is not None:
            outcome.emit(room.desk, events.envelope(ServerEvent.SCANNER_CONNECTED))
        logger.info("Scanner joined desk %s", room.desk_id)
        return outcome

    def _scan_participant(self, connection: RelayConnection, unique_id: str) -> _Outcome:
        if connection.role is not Role.SCANNER:
            return _single(connection, events.error(ONLY_SCANNER_SCANS))
        room = self.rooms.get(connection.desk_id)
        if room is None:
            return _single(connection, events.error(DESK_NOT_CONNECTED))

        frame = events.envelope(ServerEvent.SCAN_ACKNOWLEDGED, {"uniqueId": unique_id})
        outcome = _Outcome()
        for peer in room.present():
            outcome.emit(peer, frame)
        logger.info("Forwarded scan %s in desk %s", unique_id, room.desk_id)
        return outcome

    def _resume_scanning(self, connection: RelayConnection) -> _Outcome:
        if connection.role is not Role.DESK:
            return _single(connection, events.error(ONLY_DESK_RESUMES))
        room = self.rooms.get(connection.desk_id)
        if room is None or room.scanner is None:
            return _single(connection, events.error(SCANNER_NOT_CONNECTED))

        logger.debug("Forwarded resume-scanning in desk %s", room.desk_id)
        return _single(room.scanner, events.envelope(ServerEvent.RESUME_SCANNING))

    def _clear_scan(self, connection: RelayConnection) -> _Outcome:
        room = self.rooms.get(connection.desk_id)
        if room is None:
            return _single(connection, events.error(SESSION_NOT_FOUND))

        frame = events.envelope(ServerEvent.CLEAR_SCAN)
        outcome = _Outcome()
        for peer in room.present():
            outcome.emit(peer, frame)
        logger.debug("Forwarded clear-scan in desk %s", room.desk_id)
        return outcome

    def _check_join(self, connection: RelayConnection, payload: events.JoinPayload) -> _Outcome | None:
        if connection.is_bound:
            return _single(connection, events.error(ALREADY_JOINED))
        if not self.pairing_store.validate(payload.desk_id, payload.signature):
            logger.info("Join rejected for desk %s: invalid or expired token", payload.desk_id)
            return _single(connection, events.error(INVALID_SESSION))
        return None

    def _bind(self, room: Room, connection: RelayConnection, role: Role) -> _Outcome:
        """Put the connection in the role's slot, displacing any previous holder."""

        outcome = _Outcome()
        previous = room.slot(role)
        if previous is not None and previous is not connection:
            previous.unbind()
            outcome.emit(previous, events.envelope(ServerEvent.REPLACED, {"role": role.value}))
            outcome.displaced = previous
            logger.info("Replaced %s connection %s in desk %s", role.value, previous.connection_id, room.desk_id)
        room.assign(role, connection)
        connection.bind(room.desk_id, role)
        return outcome

    async def _deliver(self, outcome: _Outcome) -> None:
        for connection, frame in outcome.deliveries:
            try:
                await connection.send(frame)
            except Exception as exc:  # noqa: BLE001 - a dead peer is cleaned up by its own disconnect
                logger.warning(
                    "Failed sending %s to connection %s: %s",
                    frame.get("event"),
                    connection.connection_id,
                    exc,
                )
        displaced = outcome.displaced
        if displaced is not None and displaced.close is not None:
            try:
                await displaced.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Error closing displaced connection %s: %s", displaced.connection_id, exc)


def _single(connection: RelayConnection, frame: dict[str, Any]) -> _Outcome:
    outcome = _Outcome()
    outcome.emit(connection, frame)
    return outcome
