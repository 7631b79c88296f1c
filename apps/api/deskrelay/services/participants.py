"""Client for the external participant registration backend.

The relay never calls this on its hot path. The desk resolves a scanned id
through it after a ``scan-acknowledged`` arrives.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ..core.config import settings
from ..schemas.participants import KitEligibility, Participant

logger = logging.getLogger(__name__)

KIT_ALREADY_PROVIDED = "Kit already provided to this participant"
NOT_VERIFIED = "User not verified"
PAYMENT_PENDING = "Payment not completed"


class ParticipantDirectoryError(RuntimeError):
    """Raised when the participant backend cannot answer a request."""


class ParticipantNotFoundError(ParticipantDirectoryError):
    """Raised when the backend has no participant for the id."""


class ParticipantDirectory:
    """Thin async wrapper around the participant backend REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.participant_api_base_url).rstrip("/")
        headers = {"Content-Type": "application/json"}
        key = settings.participant_api_key if api_key is None else api_key
        if key:
            headers["x-api-key"] = key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or settings.participant_api_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ParticipantDirectory":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def get_participant(self, unique_id: str) -> Participant:
        """Fetch a participant; the backend answers with a ``user`` list."""

        payload = await self._request("GET", f"/api/auth/admin/user/{unique_id}")
        users = payload.get("user") if isinstance(payload, dict) else None
        if not users:
            raise ParticipantNotFoundError(f"User {unique_id} not found")
        try:
            return Participant.model_validate(users[0])
        except ValidationError as exc:
            raise ParticipantDirectoryError(f"Unexpected participant payload for {unique_id}") from exc

    async def mark_kit_provided(self, unique_id: str) -> None:
        await self._request("PUT", "/api/auth/user/kit/true", json={"uniqueId": unique_id})
        logger.info("Marked kit provided for %s", unique_id)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ParticipantDirectoryError(f"Participant backend unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code == 404:
            raise ParticipantNotFoundError(_message(data) or "User not found")
        if response.is_error:
            raise ParticipantDirectoryError(_message(data) or f"API request failed ({response.status_code})")
        return data


def kit_eligibility(participant: Participant) -> KitEligibility:
    """A kit can be handed out to verified, paid participants who have none yet."""

    reasons: list[str] = []
    if participant.kit:
        reasons.append(KIT_ALREADY_PROVIDED)
    if not participant.verified:
        reasons.append(NOT_VERIFIED)
    if not participant.general_fee_paid:
        reasons.append(PAYMENT_PENDING)
    return KitEligibility(can_provide=not reasons, reasons=reasons)


def _message(data: Any) -> str | None:
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, str):
            return message
    return None
