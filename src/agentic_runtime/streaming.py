"""Turn events and the per-turn ordered event channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .models import Role, ToolStatus

logger = logging.getLogger(__name__)


class TokenEvent(BaseModel):
    type: Literal["token"] = "token"
    text: str


class ReasoningEvent(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolStartedEvent(BaseModel):
    type: Literal["tool_started"] = "tool_started"
    name: str
    tool_call_id: str


class ToolFinishedEvent(BaseModel):
    type: Literal["tool_finished"] = "tool_finished"
    tool_call_id: str
    status: ToolStatus


class MessageAppendedEvent(BaseModel):
    type: Literal["message_appended"] = "message_appended"
    sequence_number: int
    role: Role
    is_comment: bool = False


class TurnDoneEvent(BaseModel):
    type: Literal["turn_done"] = "turn_done"
    final_content: str | None = None


class TurnAbortedEvent(BaseModel):
    type: Literal["turn_aborted"] = "turn_aborted"
    reason: str


TurnEvent = Annotated[
    Union[
        TokenEvent,
        ReasoningEvent,
        ToolStartedEvent,
        ToolFinishedEvent,
        MessageAppendedEvent,
        TurnDoneEvent,
        TurnAbortedEvent,
    ],
    Field(discriminator="type"),
]

turn_event_adapter: TypeAdapter[TurnEvent] = TypeAdapter(TurnEvent)

TERMINAL_EVENT_TYPES = frozenset({"turn_done", "turn_aborted"})


def encode_sse(event: BaseModel) -> str:
    """Server-Sent Events frame for one turn event."""
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"


def decode_event(data: str | bytes) -> BaseModel:
    """Parse the JSON data of an SSE frame back into a typed event."""
    return turn_event_adapter.validate_json(data)


class TurnEventChannel:
    """Single ordered event stream for one turn.

    Events are delivered in emission order. A ``tool_finished`` without a
    matching ``tool_started`` is dropped, and the terminal ``turn_done`` /
    ``turn_aborted`` event closes the channel so it is always the last one.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[BaseModel | None] = asyncio.Queue()
        self._started: set[str] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: BaseModel) -> bool:
        """Queue an event. Returns False when it was rejected."""
        if self._closed:
            logger.debug("Dropping %s event emitted after the channel closed", event.type)
            return False
        if isinstance(event, ToolStartedEvent):
            self._started.add(event.tool_call_id)
        elif isinstance(event, ToolFinishedEvent) and event.tool_call_id not in self._started:
            logger.warning("Dropping tool_finished for %s: no tool_started was emitted", event.tool_call_id)
            return False
        self._queue.put_nowait(event)
        if event.type in TERMINAL_EVENT_TYPES:
            self.close()
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[BaseModel]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
