"""Session router: streamed turns, paginated history and session stats."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from src.agentic_runtime.config import DEFAULT_HISTORY_PAGE_SIZE, MAX_HISTORY_PAGE_SIZE
from src.agentic_runtime.errors import SessionNotFoundError
from src.agentic_runtime.loop import Orchestrator
from src.agentic_runtime.models import Message
from src.agentic_runtime.streaming import encode_sse

from .dependencies import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class TurnRequest(BaseModel):
    """Request body for POST /sessions/{session_id}/turns."""

    content: str = Field(..., min_length=1, description="User message")
    agent_id: str | None = Field(None, description="Agent profile for a new session")


class MessagePage(BaseModel):
    messages: list[Message]
    has_more: bool


class SessionDetail(BaseModel):
    id: str
    agent_id: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    system_messages: int
    user_messages: int
    assistant_messages: int
    tool_messages: int
    oldest_sequence: int
    newest_sequence: int


@router.post("/{session_id}/turns")
async def run_turn(
    session_id: str,
    payload: TurnRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Run a turn and stream its events as Server-Sent Events."""

    async def event_stream() -> AsyncIterator[str]:
        async for event in orchestrator.stream_turn(session_id, payload.content, agent_id=payload.agent_id):
            yield encode_sse(event)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{session_id}/messages", response_model=MessagePage)
async def get_messages(
    session_id: str,
    limit: int = Query(default=DEFAULT_HISTORY_PAGE_SIZE, ge=1, le=MAX_HISTORY_PAGE_SIZE),
    before: int | None = Query(default=None, ge=1, description="Return messages with a lower sequence number"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> MessagePage:
    """Newest page of history, or the page just before ``before``; oldest first."""
    history = orchestrator.history
    try:
        if before is None:
            page = await history.get_recent(session_id, limit)
        else:
            page = await history.get_messages_before(session_id, before, limit)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return MessagePage(messages=page.messages, has_more=page.has_more)


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SessionDetail:
    history = orchestrator.history
    session = await history.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    stats = await history.get_session_stats(session_id)
    return SessionDetail(
        id=session.id,
        agent_id=session.agent_id,
        created_at=session.created_at,
        updated_at=session.updated_at,
        message_count=session.message_count,
        system_messages=stats.system_messages,
        user_messages=stats.user_messages,
        assistant_messages=stats.assistant_messages,
        tool_messages=stats.tool_messages,
        oldest_sequence=stats.oldest_sequence,
        newest_sequence=stats.newest_sequence,
    )
