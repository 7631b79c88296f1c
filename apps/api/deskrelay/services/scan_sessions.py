"""Polling fallback for phones that cannot hold a relay socket open."""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..schemas.scan_session import ScanSessionStatus

DEFAULT_TTL_SECONDS = 60 * 60


@dataclass(slots=True)
class ScanSession:
    session_id: str
    status: ScanSessionStatus
    participant_id: Optional[str]
    updated_at: float


class ScanSessionStore:
    """In-memory scan sessions purged an hour after their last update."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, ScanSession] = {}

    def create(self) -> ScanSession:
        self._purge_stale()
        now = self._clock()
        session_id = f"scan_{int(now * 1000)}_{secrets.token_hex(5)}"
        session = ScanSession(
            session_id=session_id,
            status=ScanSessionStatus.WAITING,
            participant_id=None,
            updated_at=now,
        )
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[ScanSession]:
        return self._sessions.get(session_id)

    def update(
        self,
        session_id: str,
        *,
        status: ScanSessionStatus | None = None,
        participant_id: str | None = None,
    ) -> Optional[ScanSession]:
        """Apply a status change; recording a participant always marks it scanned."""

        session = self._sessions.get(session_id)
        if session is None:
            return None
        if status is not None:
            session.status = status
        if participant_id:
            session.participant_id = participant_id
            session.status = ScanSessionStatus.SCANNED
        session.updated_at = self._clock()
        return session

    def _purge_stale(self) -> None:
        cutoff = self._clock() - self._ttl
        stale = [key for key, session in self._sessions.items() if session.updated_at < cutoff]
        for key in stale:
            self._sessions.pop(key, None)
