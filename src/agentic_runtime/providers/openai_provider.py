"""OpenAI (and OpenAI-compatible) LLM provider implementation for the orchestrator."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from ..errors import ProviderTransportError, classify_status
from ..models import Message, NormalizedResponse, ToolCallRequest, ToolDefinition
from .base import LLMProvider, RetryPolicy, StreamChunk, normalize_finish_reason, tool_call


class OpenAIProvider(LLMProvider):
    """OpenAI-backed LLM provider using the Chat Completions API.

    Works against any endpoint speaking the same protocol (Groq, DeepSeek,
    xAI, OpenRouter, ...) through ``base_url``.
    """

    name = "openai"

    def __init__(
        self,
        default_model: str = "gpt-4.1-nano",
        api_key: str | None = None,
        base_url: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(retry)
        self.default_model = default_model
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or ""
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL")
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if not self._client:
            kwargs: dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    @staticmethod
    def _to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """The canonical chat dicts are already OpenAI-shaped."""
        return [m.to_chat_dict() for m in messages]

    def _build_params(
        self,
        messages: list[Message],
        model: str | None,
        tools: list[ToolDefinition] | None,
        kwargs: dict[str, Any],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": self._to_openai_messages(messages),
        }
        if "max_tokens" in kwargs:
            params["max_completion_tokens"] = kwargs.pop("max_tokens")
        params.update(kwargs)
        if tools is not None:
            params["tools"] = [t.to_tool_schema() for t in tools]
        return params

    def _translate_error(self, exc: Exception) -> Exception:
        if isinstance(exc, openai.APIStatusError):
            error_cls = classify_status(exc.status_code)
            return error_cls(str(exc), provider=self.name, status_code=exc.status_code)
        return ProviderTransportError(str(exc), provider=self.name)

    @staticmethod
    def _parse_tool_calls(choice_message: Any) -> list[ToolCallRequest]:
        """Map OpenAI tool_calls into normalized tool calls, arguments kept verbatim."""
        tool_calls: list[ToolCallRequest] = []
        for tc in getattr(choice_message, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            name = getattr(fn, "name", "") if fn is not None else ""
            raw_args = getattr(fn, "arguments", None) if fn is not None else None
            tool_calls.append(tool_call(name, raw_args, getattr(tc, "id", None)))
        return tool_calls

    @staticmethod
    def _usage(resp: Any) -> dict[str, int]:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return {}
        return {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }

    async def chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> NormalizedResponse:
        """Non-streaming chat using OpenAI Chat Completions."""
        client = self._get_client()
        params = self._build_params(messages, model, tools, dict(kwargs))
        try:
            resp = await client.chat.completions.create(**params)
        except (openai.APIStatusError, openai.APIConnectionError) as exc:
            raise self._translate_error(exc) from exc

        if not resp.choices:
            return NormalizedResponse(content=None, finish_reason="error", usage=self._usage(resp))

        choice = resp.choices[0]
        message = choice.message
        content = message.content
        if isinstance(content, list):
            # Multi-part content; join text fragments
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        reasoning = getattr(message, "reasoning_content", None) or getattr(message, "reasoning", None)
        tool_calls = self._parse_tool_calls(message)
        return NormalizedResponse(
            content=content or None,
            tool_calls=tool_calls,
            reasoning=reasoning or None,
            finish_reason=normalize_finish_reason(choice.finish_reason, bool(tool_calls)),
            usage=self._usage(resp),
        )

    async def stream_chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamChunk]:
        """Streaming chat; yields text/reasoning deltas and a final done chunk."""
        client = self._get_client()
        params = self._build_params(messages, model, tools, dict(kwargs))
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}

        content_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls_buffer: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None
        usage: dict[str, int] = {}

        try:
            stream = await client.chat.completions.create(**params)
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = self._usage(chunk)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = getattr(choice, "delta", None)
                if delta is not None:
                    # Text deltas
                    if getattr(delta, "content", None):
                        content_parts.append(delta.content)
                        yield StreamChunk(type="text_delta", content=delta.content)

                    reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                    if reasoning:
                        reasoning_parts.append(reasoning)
                        yield StreamChunk(type="reasoning_delta", content=reasoning)

                    # Tool call deltas
                    for tc in getattr(delta, "tool_calls", None) or []:
                        idx = getattr(tc, "index", 0) or 0
                        buf = tool_calls_buffer.setdefault(idx, {"id": None, "name": "", "arguments": ""})
                        if getattr(tc, "id", None):
                            buf["id"] = tc.id
                        fn = getattr(tc, "function", None)
                        if fn is not None:
                            if getattr(fn, "name", None):
                                buf["name"] = fn.name
                            if getattr(fn, "arguments", None):
                                buf["arguments"] += fn.arguments

                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason
        except (openai.APIStatusError, openai.APIConnectionError) as exc:
            raise self._translate_error(exc) from exc

        final_tool_calls = [
            tool_call(buf["name"], buf["arguments"] or "{}", buf["id"])
            for _, buf in sorted(tool_calls_buffer.items())
        ]
        yield StreamChunk(
            type="done",
            content="".join(content_parts),
            response=NormalizedResponse(
                content="".join(content_parts) or None,
                tool_calls=final_tool_calls,
                reasoning="".join(reasoning_parts) or None,
                finish_reason=normalize_finish_reason(finish_reason, bool(final_tool_calls)),
                usage=usage,
            ),
        )
