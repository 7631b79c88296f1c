"""In-memory registry of desk pairing tokens."""
from __future__ import annotations

import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class PairingToken:
    """Credentials handed to a desk when it enables scanner mode."""

    desk_id: str
    signature: str
    created_at: float


@dataclass(slots=True)
class _PairingEntry:
    signature: str
    created_at: float


class PairingStore:
    """Issue and validate pairing tokens with TTL expiry.

    Tokens are never renewed in place. Asking for a new one leaves older tokens
    valid until their own TTL runs out.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Clock = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _PairingEntry] = {}

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def issue(self) -> PairingToken:
        """Create a fresh token and remember its signature."""

        self._evict_expired()
        desk_id = secrets.token_hex(16)
        while desk_id in self._entries:
            desk_id = secrets.token_hex(16)
        signature = secrets.token_hex(32)
        created_at = self._clock()
        self._entries[desk_id] = _PairingEntry(signature=signature, created_at=created_at)
        logger.info("Issued pairing token for desk %s", desk_id)
        return PairingToken(desk_id=desk_id, signature=signature, created_at=created_at)

    def validate(self, desk_id: str, signature: str) -> bool:
        """Return True when the token exists, is fresh, and the signature matches."""

        entry = self._entries.get(desk_id)
        if entry is None:
            return False
        if self._is_expired(entry, self._clock()):
            self._entries.pop(desk_id, None)
            logger.info("Pairing token for desk %s expired", desk_id)
            return False
        return hmac.compare_digest(entry.signature.encode(), signature.encode())

    def _is_expired(self, entry: _PairingEntry, now: float) -> bool:
        return now - entry.created_at > self._ttl

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            self._entries.pop(key, None)
