"""Data models for messages, sessions, tools and provider responses."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "tool_calls", "length", "error"]
ToolStatus = Literal["ok", "error"]


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model, normalized across providers."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments_json: str = "{}"

    def to_wire(self) -> dict[str, Any]:
        """OpenAI-style function call entry."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageDraft(BaseModel):
    """What a caller hands to the history manager; sequencing is added on append."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_comment: bool = False
    reasoning: str | None = None

    @classmethod
    def system(cls, content: str) -> MessageDraft:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> MessageDraft:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        *,
        reasoning: str | None = None,
        is_comment: bool = False,
    ) -> MessageDraft:
        return cls(role="assistant", content=content or "", reasoning=reasoning, is_comment=is_comment)

    @classmethod
    def tool_calls_request(
        cls,
        tool_calls: list[ToolCallRequest] | tuple[ToolCallRequest, ...],
        *,
        reasoning: str | None = None,
    ) -> MessageDraft:
        # Content stays None: mixed content + tool_calls is rejected by some providers.
        return cls(role="assistant", content=None, tool_calls=tuple(tool_calls), reasoning=reasoning)

    @classmethod
    def tool_result(cls, result: ToolExecutionResult) -> MessageDraft:
        """Tool-role message for a result; name and call id come from the result itself."""
        return cls(
            role="tool",
            content=result.payload_json,
            tool_call_id=result.tool_call_id,
            tool_name=result.name,
        )


class Message(BaseModel):
    """A persisted, immutable entry of a session's ordered history."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence_number: int
    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_comment: bool = False
    reasoning: str | None = None
    created_at: datetime

    def to_chat_dict(self) -> dict[str, Any]:
        """Canonical provider payload for this message (OpenAI chat format)."""
        out: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            out["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.role == "tool":
            out["tool_call_id"] = self.tool_call_id
            out["name"] = self.tool_name
        return out


def serialize_context(messages: list[Message]) -> str:
    """Stable JSON rendering of a context, used to compare provider payloads."""
    return json.dumps([m.to_chat_dict() for m in messages], ensure_ascii=False, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Sessions and pagination
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Session:
    id: str
    agent_id: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0


@dataclass(slots=True)
class HistoryPage:
    """A page of messages in chronological order (oldest first)."""

    messages: list[Message]
    has_more: bool


@dataclass(slots=True)
class SessionStats:
    total_messages: int
    system_messages: int
    user_messages: int
    assistant_messages: int
    tool_messages: int
    oldest_sequence: int
    newest_sequence: int


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass
class ToolResult:
    """Result a tool implementation may return instead of a bare payload."""

    success: bool
    content: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Tool definition for the orchestrator and LLM."""

    name: str
    description: str
    parameters_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_tool_schema(self) -> dict[str, Any]:
        """Standard function-calling schema (OpenAI-style) for any LLM provider."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }


@dataclass(frozen=True)
class ToolExecutionResult:
    """Outcome of one tool call. Produced for every call, including failures."""

    tool_call_id: str
    name: str
    status: ToolStatus
    payload_json: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def error(
        cls,
        tool_call_id: str,
        name: str,
        message: str,
        *,
        duration_ms: int = 0,
        **details: Any,
    ) -> ToolExecutionResult:
        payload = {"error": message, **details}
        return cls(
            tool_call_id=tool_call_id,
            name=name,
            status="error",
            payload_json=json.dumps(payload, ensure_ascii=False, default=str),
            duration_ms=duration_ms,
        )


# ---------------------------------------------------------------------------
# Provider responses
# ---------------------------------------------------------------------------


class NormalizedResponse(BaseModel):
    """Provider-agnostic result of one provider call."""

    content: str | None = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    reasoning: str | None = None
    finish_reason: FinishReason = "stop"
    usage: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentProfile(BaseModel):
    """Persona and model configuration a session runs with."""

    id: str
    model: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    def completion_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs
