"""Ollama LLM provider implementation."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx
import ollama
from ollama import AsyncClient

from ..errors import ProviderRequestError, ProviderTransportError, classify_status
from ..models import Message, NormalizedResponse, ToolCallRequest, ToolDefinition
from .base import LLMProvider, RetryPolicy, StreamChunk, normalize_finish_reason, tool_call


def _decode_arguments(arguments_json: str) -> dict[str, Any]:
    """Ollama expects arguments as an object, not a JSON string."""
    try:
        value = json.loads(arguments_json or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _message_to_chat(m: Message) -> dict[str, Any]:
    """Convert our Message to Ollama chat format."""
    out: dict[str, Any] = {"role": m.role, "content": m.content or ""}
    if m.tool_calls:
        out["tool_calls"] = [
            {
                "function": {
                    "name": tc.name,
                    "arguments": _decode_arguments(tc.arguments_json),
                },
            }
            for tc in m.tool_calls
        ]
    if m.role == "tool":
        out["tool_name"] = m.tool_name
    return out


class OllamaProvider(LLMProvider):
    """Ollama-backed LLM provider."""

    name = "ollama"

    def __init__(
        self,
        default_model: str = "llama3.2",
        base_url: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(retry)
        self.default_model = default_model
        self.base_url = base_url or os.getenv("OLLAMA_HOST") or "http://localhost:11434"

    def _translate_error(self, exc: Exception) -> Exception:
        if isinstance(exc, ollama.ResponseError):
            error_cls = classify_status(exc.status_code)
            return error_cls(str(exc), provider=self.name, status_code=exc.status_code)
        if isinstance(exc, ollama.RequestError):
            return ProviderRequestError(str(exc), provider=self.name)
        return ProviderTransportError(str(exc), provider=self.name)

    @staticmethod
    def _options(kwargs: dict[str, Any]) -> dict[str, Any] | None:
        options: dict[str, Any] = {}
        if "temperature" in kwargs:
            options["temperature"] = kwargs["temperature"]
        if "max_tokens" in kwargs:
            options["num_predict"] = kwargs["max_tokens"]
        return options or None

    async def chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> NormalizedResponse:
        async for chunk in self.stream_chat(messages, model=model, tools=tools, **kwargs):
            if chunk.type == "done" and chunk.response is not None:
                return chunk.response
        raise ProviderTransportError("ollama stream ended without a final chunk", provider=self.name)

    async def stream_chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamChunk]:
        client = AsyncClient(host=self.base_url)
        chat_messages = [_message_to_chat(m) for m in messages]
        ollama_tools = [t.to_tool_schema() for t in tools] if tools else None
        model_name = model or self.default_model
        content_parts: list[str] = []
        reasoning_parts: list[str] = []
        final_tool_calls: list[ToolCallRequest] = []
        done_reason: str | None = None
        usage: dict[str, int] = {}

        try:
            stream = await client.chat(
                model=model_name,
                messages=chat_messages,
                tools=ollama_tools,
                stream=True,
                options=self._options(kwargs),
            )
            async for chunk in stream:
                if getattr(chunk, "done", False):
                    done_reason = getattr(chunk, "done_reason", None)
                    prompt_tokens = getattr(chunk, "prompt_eval_count", None) or 0
                    completion_tokens = getattr(chunk, "eval_count", None) or 0
                    usage = {
                        "prompt_tokens": prompt_tokens,
                        "completion_tokens": completion_tokens,
                        "total_tokens": prompt_tokens + completion_tokens,
                    }
                msg = getattr(chunk, "message", None)
                if msg is None:
                    continue
                thinking = getattr(msg, "thinking", None) or ""
                if thinking:
                    reasoning_parts.append(thinking)
                    yield StreamChunk(type="reasoning_delta", content=thinking)
                delta = getattr(msg, "content", None) or ""
                if delta:
                    content_parts.append(delta)
                    yield StreamChunk(type="text_delta", content=delta)
                for tc in getattr(msg, "tool_calls", None) or []:
                    fn = getattr(tc, "function", None)
                    if fn is None:
                        continue
                    final_tool_calls.append(
                        tool_call(getattr(fn, "name", "") or "", getattr(fn, "arguments", None))
                    )
        except (ollama.ResponseError, ollama.RequestError, httpx.TransportError, ConnectionError) as exc:
            raise self._translate_error(exc) from exc
        finally:
            aclose = getattr(client, "aclose", None)
            if callable(aclose):
                await aclose()

        yield StreamChunk(
            type="done",
            content="".join(content_parts),
            response=NormalizedResponse(
                content="".join(content_parts) or None,
                tool_calls=final_tool_calls,
                reasoning="".join(reasoning_parts) or None,
                finish_reason=normalize_finish_reason(done_reason, bool(final_tool_calls)),
                usage=usage,
            ),
        )
