"""Polling scan-session endpoints."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request, status

from ..schemas import scan_session as schemas
from ..services.scan_sessions import ScanSession, ScanSessionStore

router = APIRouter()


def _store(request: Request) -> ScanSessionStore:
    store: ScanSessionStore | None = getattr(request.app.state, "scan_sessions", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scan sessions unavailable")
    return store


def _to_response(session: ScanSession) -> schemas.ScanSessionResponse:
    return schemas.ScanSessionResponse(
        session_id=session.session_id,
        status=session.status,
        participant_id=session.participant_id,
    )


@router.post("", response_model=schemas.ScanSessionCreated)
async def create_scan_session(request: Request) -> schemas.ScanSessionCreated:
    """Open a new session in the waiting state."""

    session = _store(request).create()
    return schemas.ScanSessionCreated(session_id=session.session_id)


@router.get("", response_model=schemas.ScanSessionResponse)
async def get_scan_session(
    request: Request,
    session_id: str | None = Query(default=None),
) -> schemas.ScanSessionResponse:
    """Return the current status of a scan session."""

    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="session_id required")
    session = _store(request).get(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return _to_response(session)


@router.put("", response_model=schemas.ScanSessionResponse)
async def update_scan_session(
    payload: schemas.ScanSessionUpdateRequest,
    request: Request,
) -> schemas.ScanSessionResponse:
    """Record a scanned participant or reset the session status."""

    session = _store(request).update(
        payload.session_id,
        status=payload.status,
        participant_id=payload.participant_id,
    )
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return _to_response(session)
