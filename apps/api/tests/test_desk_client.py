"""Tests for the desk-side pairing client."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from deskrelay.clients import desk
from deskrelay.clients.desk import DeskClient, DeskState, PairingRequestError, PairingStateFile
from deskrelay.schemas.participants import Participant
from deskrelay.services.pairing_url import PairingPayload, build_scanner_url
from deskrelay.services.participants import ParticipantNotFoundError

DESK_ID = "a" * 32
SIGNATURE = "b" * 64
ENDPOINT = "ws://relay.local/ws"

_CLOSED = object()


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._messages: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        await self._messages.put(_CLOSED)

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str:
        message = await self._messages.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message  # type: ignore[return-value]

    async def push(self, event: str, data: dict | None = None) -> None:
        await self._messages.put(json.dumps({"event": event, "data": data or {}}))


class FakeDirectory:
    def __init__(self) -> None:
        self.lookups: list[str] = []
        self.users = {
            "INF1234": Participant.model_validate(
                {"uniqueId": "INF1234", "verified": True, "generalFeePaid": True, "kit": False}
            )
        }

    async def get_participant(self, unique_id: str) -> Participant:
        self.lookups.append(unique_id)
        if unique_id not in self.users:
            raise ParticipantNotFoundError("User not found")
        return self.users[unique_id]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def token_transport(status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/api/desk/session"
        if status_code != 200:
            return httpx.Response(status_code, json={"success": False, "message": "Desk session service not available"})
        url = build_scanner_url(
            "http://desk.local",
            PairingPayload(desk_id=DESK_ID, signature=SIGNATURE, endpoint=ENDPOINT),
        )
        return httpx.Response(
            200,
            json={"success": True, "deskId": DESK_ID, "signature": SIGNATURE, "scannerUrl": url},
        )

    return httpx.MockTransport(handler)


async def settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def ws(monkeypatch) -> DummyWebSocket:
    socket = DummyWebSocket()
    connected: list[str] = []

    async def fake_connect(url: str, **kwargs):
        connected.append(url)
        return socket

    monkeypatch.setattr(desk, "websockets", SimpleNamespace(connect=fake_connect))
    socket.connected = connected  # type: ignore[attr-defined]
    return socket


@pytest.mark.asyncio
async def test_enable_persists_pairing_and_joins(ws, tmp_path):
    state_file = PairingStateFile(tmp_path / "pairing.json")
    client = DeskClient(
        "http://desk.local",
        FakeDirectory(),
        state_file=state_file,
        http_transport=token_transport(),
    )

    scanner_url = await client.enable()

    assert "deskId=" + DESK_ID in scanner_url
    assert ws.connected == [ENDPOINT]
    assert ws.sent == [{"event": "join-desk", "data": {"deskId": DESK_ID, "signature": SIGNATURE}}]
    assert state_file.load() == PairingPayload(desk_id=DESK_ID, signature=SIGNATURE, endpoint=ENDPOINT)
    assert client.state is DeskState.REQUESTING

    await ws.push("desk-joined", {"deskId": DESK_ID})
    await settle()
    assert client.state is DeskState.WAITING_FOR_SCANNER

    await client.disable()

    assert ws.closed is True
    assert state_file.load() is None
    assert client.state is DeskState.IDLE
    assert client.pairing is None


@pytest.mark.asyncio
async def test_enable_failure_raises_and_returns_to_idle(ws):
    client = DeskClient("http://desk.local", FakeDirectory(), http_transport=token_transport(503))

    with pytest.raises(PairingRequestError, match="not available"):
        await client.enable()

    assert client.state is DeskState.IDLE
    assert ws.connected == []


@pytest.mark.asyncio
async def test_state_machine_follows_relay_events(ws):
    scans = []

    async def on_scan(result):
        scans.append(result)

    directory = FakeDirectory()
    client = DeskClient(
        "http://desk.local",
        directory,
        on_scan=on_scan,
        http_transport=token_transport(),
    )
    await client.enable()

    await ws.push("desk-joined", {"deskId": DESK_ID})
    await ws.push("scanner-connected")
    await settle()
    assert client.state is DeskState.SCANNER_CONNECTED

    await ws.push("scan-acknowledged", {"uniqueId": "INF1234"})
    await settle()
    assert directory.lookups == ["INF1234"]
    assert scans[0].short_id == "1234"
    assert scans[0].eligibility.can_provide is True
    assert client.current_scan is scans[0]

    await client.resume_scanning()
    assert ws.sent[-1] == {"event": "resume-scanning", "data": {}}
    assert client.current_scan is None

    await ws.push("scanner-disconnected")
    await settle()
    assert client.state is DeskState.WAITING_FOR_SCANNER

    await client.disable()


@pytest.mark.asyncio
async def test_failed_lookup_is_reported_on_scan(ws):
    client = DeskClient("http://desk.local", FakeDirectory(), http_transport=token_transport())
    await client.enable()

    await client.handle_event({"event": "scan-acknowledged", "data": {"uniqueId": "INF0404"}})

    assert client.current_scan is not None
    assert client.current_scan.participant is None
    assert client.current_scan.error == "User not found"

    await client.clear_scan()
    assert ws.sent[-1]["event"] == "clear-scan"
    await client.handle_event({"event": "clear-scan", "data": {}})
    assert client.current_scan is None

    await client.disable()


@pytest.mark.asyncio
async def test_error_event_invokes_handler(ws):
    errors: list[str] = []

    async def on_error(message: str) -> None:
        errors.append(message)

    client = DeskClient("http://desk.local", FakeDirectory(), on_error=on_error, http_transport=token_transport())
    await client.enable()

    await client.handle_event({"event": "error", "data": {"message": "Connection already joined"}})

    assert errors == ["Connection already joined"]
    assert client.last_error == "Connection already joined"
    await client.disable()


@pytest.mark.asyncio
async def test_restore_rejoins_without_new_token(ws, tmp_path):
    state_file = PairingStateFile(tmp_path / "pairing.json")
    state_file.save(PairingPayload(desk_id=DESK_ID, signature=SIGNATURE, endpoint=ENDPOINT))

    def refuse(request: httpx.Request) -> httpx.Response:
        raise AssertionError("restore must not request a token")

    client = DeskClient(
        "http://desk.local",
        FakeDirectory(),
        state_file=state_file,
        http_transport=httpx.MockTransport(refuse),
    )

    assert await client.restore() is True
    assert ws.sent[0]["event"] == "join-desk"
    assert client.scanner_url is not None and SIGNATURE in client.scanner_url
    await client.disable()


@pytest.mark.asyncio
async def test_restore_discards_corrupt_state(ws, tmp_path):
    path = tmp_path / "pairing.json"
    path.write_text("{not json", encoding="utf-8")
    client = DeskClient("http://desk.local", FakeDirectory(), state_file=PairingStateFile(path))

    assert await client.restore() is False
    assert not path.exists()
    assert ws.connected == []


@pytest.mark.asyncio
async def test_staleness_heuristic(ws):
    clock = FakeClock()
    client = DeskClient("http://desk.local", FakeDirectory(), http_transport=token_transport(), clock=clock)
    await client.enable()

    assert client.is_stale() is False

    await client.handle_event({"event": "scanner-connected", "data": {}})
    clock.now += 119
    assert client.is_stale() is False
    clock.now += 2
    assert client.is_stale() is True

    await client.handle_event({"event": "scan-acknowledged", "data": {"uniqueId": "INF1234"}})
    assert client.is_stale() is False
    assert client.is_stale(now=clock.now + 121) is True

    await client.handle_event({"event": "scanner-disconnected", "data": {}})
    assert client.is_stale(now=clock.now + 500) is False
    await client.disable()


@pytest.mark.asyncio
async def test_replaced_returns_desk_to_idle(ws):
    client = DeskClient("http://desk.local", FakeDirectory(), http_transport=token_transport())
    await client.enable()
    await client.handle_event({"event": "scanner-connected", "data": {}})

    await client.handle_event({"event": "replaced", "data": {"role": "desk"}})

    assert client.state is DeskState.IDLE
    await client.disable()


@pytest.mark.asyncio
async def test_connect_failure_returns_to_idle_and_drops_state(monkeypatch, tmp_path):
    async def refuse_connect(url: str, **kwargs):
        raise ConnectionRefusedError("relay down")

    monkeypatch.setattr(desk, "websockets", SimpleNamespace(connect=refuse_connect))
    state_file = PairingStateFile(tmp_path / "pairing.json")
    client = DeskClient(
        "http://desk.local",
        FakeDirectory(),
        state_file=state_file,
        http_transport=token_transport(),
    )

    with pytest.raises(PairingRequestError, match="relay down"):
        await client.enable()

    assert client.state is DeskState.IDLE
    assert client.pairing is None
    assert state_file.load() is None


@pytest.mark.asyncio
async def test_restore_of_expired_pairing_is_dropped(ws, tmp_path):
    state_file = PairingStateFile(tmp_path / "pairing.json")
    state_file.save(PairingPayload(desk_id=DESK_ID, signature=SIGNATURE, endpoint=ENDPOINT))
    errors: list[str] = []

    async def on_error(message: str) -> None:
        errors.append(message)

    client = DeskClient("http://desk.local", FakeDirectory(), state_file=state_file, on_error=on_error)

    assert await client.restore() is True
    assert client.state is DeskState.REQUESTING

    await ws.push("error", {"message": "Invalid or expired desk session"})
    await settle()

    assert errors == ["Invalid or expired desk session"]
    assert client.state is DeskState.IDLE
    assert client.pairing is None
    assert state_file.load() is None
    assert ws.closed is True
    await client.disable()
