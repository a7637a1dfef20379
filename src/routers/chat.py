"""Chat router: non-streaming turn endpoint."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.agentic_runtime.loop import Orchestrator

from .dependencies import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatRequest(BaseModel):
    """Request body for POST /chat."""

    message: str = Field(..., min_length=1, description="User message")
    session_id: str | None = Field(None, description="Optional session id to continue")
    agent_id: str | None = Field(
        None,
        description="Agent profile to run the session with; ignored for existing sessions",
    )


class ChatResponse(BaseModel):
    """Response for POST /chat."""

    session_id: str
    reply: str
    state: str
    message_count: int = 0


@router.post("", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ChatResponse:
    """Run one turn and return the final assistant reply (or the abort message)."""
    session_id = request.session_id or uuid.uuid4().hex
    try:
        outcome = await orchestrator.run_turn(session_id, request.message, agent_id=request.agent_id)
        session = await orchestrator.history.get_session(session_id)
    except Exception as e:
        logger.exception("Chat turn failed for session %s", session_id)
        raise HTTPException(status_code=500, detail=str(e)) from e
    return ChatResponse(
        session_id=session_id,
        reply=outcome.final_content or "",
        state=outcome.state.value,
        message_count=session.message_count if session else 0,
    )
