"""Session endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from parley.models.session import Session
from parley.server.dependencies import find_session, get_engine, get_session_store
from parley.server.models import SessionInfo

router = APIRouter(tags=["sessions"])


def _info(session: Session) -> SessionInfo:
    return SessionInfo(
        session_id=session.id,
        model=session.model,
        title=session.title,
        status=session.status.value,
        created_at=session.created_at.isoformat(),
        updated_at=session.updated_at.isoformat(),
        message_count=len(session.messages),
        cost=session.usage.cost,
    )


@router.get("/sessions")
async def list_sessions() -> list[SessionInfo]:
    """Live sessions first, then stored ones not currently loaded."""
    live = get_engine().list_sessions()
    live_ids = {s.id for s in live}
    stored = [s for s in get_session_store().list_sessions() if s.id not in live_ids]
    return [_info(s) for s in live + stored]


@router.get("/sessions/{session_id}")
async def get_session(session_id: str) -> dict[str, Any]:
    """Full session, including messages and tool calls."""
    session = find_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.model_dump(mode="json", exclude={"background"})


@router.post("/sessions/{session_id}/abort")
async def abort_session(session_id: str) -> dict[str, Any]:
    engine = get_engine()
    if engine.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not live")
    aborted = engine.abort(session_id)
    return {"ok": True, "aborted": aborted}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str) -> dict[str, Any]:
    if not get_session_store().delete(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True}
