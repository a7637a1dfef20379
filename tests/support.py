"""Shared test doubles."""
from __future__ import annotations

import inspect
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from src.agentic_runtime.history import HistoryManager
from src.agentic_runtime.models import (
    Message,
    NormalizedResponse,
    ToolDefinition,
    serialize_context,
)
from src.agentic_runtime.providers.base import LLMProvider, RetryPolicy, StreamChunk, tool_call


def text(content: str, finish_reason: str = "stop") -> NormalizedResponse:
    return NormalizedResponse(content=content, finish_reason=finish_reason)


def calls(*entries: tuple[str, Any] | tuple[str, Any, str]) -> NormalizedResponse:
    """Tool-call response; each entry is (name, arguments[, call_id])."""
    tool_calls = [tool_call(entry[0], entry[1], entry[2] if len(entry) > 2 else None) for entry in entries]
    return NormalizedResponse(content=None, tool_calls=tool_calls, finish_reason="tool_calls")


@dataclass
class ProviderCall:
    messages: list[Message]
    tools: list[ToolDefinition] | None
    payload: str

    @property
    def tool_names(self) -> list[str] | None:
        return None if self.tools is None else [t.name for t in self.tools]


class ScriptedProvider(LLMProvider):
    """Provider that replays a fixed script of responses.

    A script step is a ``NormalizedResponse``, an exception to raise, or a
    (possibly async) callable ``(messages, tools) -> step``.
    """

    name = "scripted"

    def __init__(self, script: list[Any], retry: RetryPolicy | None = None) -> None:
        super().__init__(retry or RetryPolicy(max_attempts=1, base_delay=0, max_delay=0, attempt_timeout=None))
        self.script = list(script)
        self.calls: list[ProviderCall] = []

    async def chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> NormalizedResponse:
        self.calls.append(ProviderCall(list(messages), tools, serialize_context(messages)))
        if not self.script:
            raise AssertionError(f"unexpected provider call #{len(self.calls)}")
        step = self.script.pop(0)
        if callable(step):
            step = step(messages, tools)
            if inspect.isawaitable(step):
                step = await step
        if isinstance(step, BaseException):
            raise step
        return step

    async def stream_chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamChunk]:
        response = await self.chat(messages, model=model, tools=tools, **kwargs)
        for word in (response.content or "").split(" "):
            if word:
                yield StreamChunk(type="text_delta", content=word + " ")
        yield StreamChunk(type="done", content=response.content or "", response=response)


def new_history() -> HistoryManager:
    return HistoryManager(":memory:")


def payload_of(message: Message) -> dict[str, Any]:
    return json.loads(message.content or "null")
