"""Tests for the participant backend client and kit eligibility."""
from __future__ import annotations

import json

import httpx
import pytest

from deskrelay.schemas.participants import Participant
from deskrelay.services import participants
from deskrelay.services.participants import (
    ParticipantDirectory,
    ParticipantDirectoryError,
    ParticipantNotFoundError,
    kit_eligibility,
)

USER = {
    "uniqueId": "INF1234",
    "name": "Asha",
    "verified": True,
    "generalFeePaid": True,
    "workshopFeePaid": False,
    "kit": False,
}


def directory(handler) -> ParticipantDirectory:
    return ParticipantDirectory(
        base_url="http://backend",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_get_participant_returns_first_user():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"user": [USER, {**USER, "uniqueId": "INF9999"}]})

    async with directory(handler) as client:
        participant = await client.get_participant("INF1234")

    assert participant.unique_id == "INF1234"
    assert participant.general_fee_paid is True
    assert seen[0].url.path == "/api/auth/admin/user/INF1234"
    assert seen[0].headers["x-api-key"] == "secret"


@pytest.mark.asyncio
async def test_get_participant_empty_result_is_not_found():
    async with directory(lambda request: httpx.Response(200, json={"user": []})) as client:
        with pytest.raises(ParticipantNotFoundError):
            await client.get_participant("INF0000")


@pytest.mark.asyncio
async def test_backend_error_message_is_surfaced():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "database offline"})

    async with directory(handler) as client:
        with pytest.raises(ParticipantDirectoryError, match="database offline"):
            await client.get_participant("INF1234")


@pytest.mark.asyncio
async def test_network_failure_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with directory(handler) as client:
        with pytest.raises(ParticipantDirectoryError, match="unreachable"):
            await client.get_participant("INF1234")


@pytest.mark.asyncio
async def test_mark_kit_provided_puts_unique_id():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "message": "ok"})

    async with directory(handler) as client:
        await client.mark_kit_provided("INF1234")

    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/api/auth/user/kit/true"
    assert json.loads(seen[0].content) == {"uniqueId": "INF1234"}


def test_kit_eligibility_rules():
    ready = Participant.model_validate(USER)
    assert kit_eligibility(ready).can_provide is True

    blocked = Participant.model_validate({**USER, "verified": False, "generalFeePaid": False, "kit": True})
    result = kit_eligibility(blocked)

    assert result.can_provide is False
    assert result.reasons == [
        participants.KIT_ALREADY_PROVIDED,
        participants.NOT_VERIFIED,
        participants.PAYMENT_PENDING,
    ]
