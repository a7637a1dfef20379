"""Google Gemini LLM provider implementation for the orchestrator."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ..errors import ProviderTransportError, classify_status
from ..models import Message, NormalizedResponse, ToolCallRequest, ToolDefinition
from .base import LLMProvider, RetryPolicy, StreamChunk, normalize_finish_reason, tool_call


def _parse_arguments(arguments_json: str) -> dict[str, Any]:
    try:
        value = json.loads(arguments_json or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _response_payload(content: str | None) -> dict[str, Any]:
    """FunctionResponse.response must be an object; wrap anything else."""
    if not content:
        return {"result": None}
    try:
        value = json.loads(content)
    except json.JSONDecodeError:
        return {"result": content}
    return value if isinstance(value, dict) else {"result": value}


class GeminiProvider(LLMProvider):
    """Gemini provider using the google-genai SDK."""

    name = "gemini"

    def __init__(
        self,
        default_model: str = "gemini-2.5-flash",
        api_key: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(retry)
        self.default_model = default_model
        self.api_key = api_key or os.getenv("GOOGLE_API_KEY") or os.getenv(
            "GEMINI_API_KEY",
            "",
        )
        self._client: genai.Client | None = None

    def _get_client(self) -> genai.Client:
        if not self._client:
            self._client = genai.Client(
                api_key=self.api_key,
                http_options={"api_version": "v1beta"},
            )
        return self._client

    @staticmethod
    def _to_gemini_contents(messages: list[Message]) -> tuple[list[genai_types.Content], str | None]:
        """Convert history into Gemini contents and a system instruction.

        Tool results become ``function_response`` parts named after the call;
        consecutive results are merged into one user turn.
        """
        contents: list[genai_types.Content] = []
        system_parts: list[str] = []

        for m in messages:
            if m.role == "system":
                if (m.content or "").strip():
                    system_parts.append(m.content.strip())
                continue
            if m.role == "tool":
                part = genai_types.Part(
                    function_response=genai_types.FunctionResponse(
                        id=m.tool_call_id,
                        name=m.tool_name,
                        response=_response_payload(m.content),
                    )
                )
                last = contents[-1] if contents else None
                if last is not None and last.role == "user" and last.parts and last.parts[0].function_response:
                    last.parts.append(part)
                else:
                    contents.append(genai_types.Content(role="user", parts=[part]))
                continue

            role = "model" if m.role == "assistant" else "user"
            parts: list[genai_types.Part] = []
            if m.content:
                # Construct Part directly to avoid signature issues with from_text()
                parts.append(genai_types.Part(text=m.content))
            for tc in m.tool_calls:
                parts.append(
                    genai_types.Part(
                        function_call=genai_types.FunctionCall(
                            id=tc.id,
                            name=tc.name,
                            args=_parse_arguments(tc.arguments_json),
                        )
                    )
                )
            if parts:
                contents.append(genai_types.Content(role=role, parts=parts))

        system_instruction = "\n\n".join(system_parts) or None
        return contents, system_instruction

    @staticmethod
    def _to_gemini_tools(tools: list[ToolDefinition] | None) -> list[genai_types.Tool] | None:
        """Convert function tools into Gemini Tool declarations."""
        if not tools:
            return None
        function_declarations = [
            genai_types.FunctionDeclaration(
                name=t.name,
                description=t.description,
                parameters=t.parameters_schema or None,
            )
            for t in tools
        ]
        return [genai_types.Tool(function_declarations=function_declarations)]

    def _build_config(
        self,
        tools: list[ToolDefinition] | None,
        system_instruction: str | None,
        kwargs: dict[str, Any],
    ) -> genai_types.GenerateContentConfig:
        config_args: dict[str, Any] = {}
        gemini_tools = self._to_gemini_tools(tools)
        if gemini_tools:
            config_args["tools"] = gemini_tools
            config_args["tool_config"] = genai_types.ToolConfig(
                function_calling_config=genai_types.FunctionCallingConfig(
                    mode=genai_types.FunctionCallingConfigMode.AUTO
                )
            )
            # The SDK would otherwise run Python callables itself.
            config_args["automatic_function_calling"] = genai_types.AutomaticFunctionCallingConfig(
                disable=True
            )
        if system_instruction:
            config_args["system_instruction"] = system_instruction
        if "temperature" in kwargs:
            config_args["temperature"] = kwargs["temperature"]
        if "max_tokens" in kwargs:
            config_args["max_output_tokens"] = kwargs["max_tokens"]
        return genai_types.GenerateContentConfig(**config_args)

    def _translate_error(self, exc: Exception) -> Exception:
        if isinstance(exc, genai_errors.APIError):
            error_cls = classify_status(exc.code)
            return error_cls(str(exc), provider=self.name, status_code=exc.code)
        return ProviderTransportError(str(exc), provider=self.name)

    @staticmethod
    def _collect_parts(candidate: Any) -> tuple[list[str], list[str], list[ToolCallRequest]]:
        texts: list[str] = []
        thoughts: list[str] = []
        calls: list[ToolCallRequest] = []
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            fc = getattr(part, "function_call", None)
            if fc:
                calls.append(tool_call(fc.name or "", dict(fc.args) if fc.args else {}, getattr(fc, "id", None)))
                continue
            text = getattr(part, "text", None)
            if not text:
                continue
            if getattr(part, "thought", False):
                thoughts.append(text)
            else:
                texts.append(text)
        return texts, thoughts, calls

    @staticmethod
    def _usage(resp: Any) -> dict[str, int]:
        meta = getattr(resp, "usage_metadata", None)
        if meta is None:
            return {}
        return {
            "prompt_tokens": getattr(meta, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(meta, "candidates_token_count", 0) or 0,
            "total_tokens": getattr(meta, "total_token_count", 0) or 0,
        }

    async def chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> NormalizedResponse:
        """Non-streaming chat using Gemini generate_content."""
        client = self._get_client()
        contents, system_instruction = self._to_gemini_contents(messages)
        config = self._build_config(tools, system_instruction, kwargs)
        try:
            resp = await client.aio.models.generate_content(
                model=model or self.default_model,
                contents=contents,
                config=config,
            )
        except (genai_errors.APIError, httpx.TransportError) as exc:
            raise self._translate_error(exc) from exc

        candidates = getattr(resp, "candidates", None) or []
        if not candidates:
            return NormalizedResponse(content=None, finish_reason="error", usage=self._usage(resp))
        texts, thoughts, calls = self._collect_parts(candidates[0])
        return NormalizedResponse(
            content="".join(texts) or None,
            tool_calls=calls,
            reasoning="".join(thoughts) or None,
            finish_reason=normalize_finish_reason(getattr(candidates[0], "finish_reason", None), bool(calls)),
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
        """Streaming chat for Gemini; yields text deltas and a final done chunk."""
        client = self._get_client()
        contents, system_instruction = self._to_gemini_contents(messages)
        config = self._build_config(tools, system_instruction, kwargs)

        content_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        finish_reason: Any = None
        usage: dict[str, int] = {}

        try:
            stream = await client.aio.models.generate_content_stream(
                model=model or self.default_model,
                contents=contents,
                config=config,
            )
            async for chunk in stream:
                usage = self._usage(chunk) or usage
                for cand in getattr(chunk, "candidates", None) or []:
                    texts, thoughts, calls = self._collect_parts(cand)
                    for text in texts:
                        content_parts.append(text)
                        yield StreamChunk(type="text_delta", content=text)
                    for thought in thoughts:
                        reasoning_parts.append(thought)
                        yield StreamChunk(type="reasoning_delta", content=thought)
                    tool_calls.extend(calls)
                    if getattr(cand, "finish_reason", None):
                        finish_reason = cand.finish_reason
        except (genai_errors.APIError, httpx.TransportError) as exc:
            raise self._translate_error(exc) from exc

        yield StreamChunk(
            type="done",
            content="".join(content_parts),
            response=NormalizedResponse(
                content="".join(content_parts) or None,
                tool_calls=tool_calls,
                reasoning="".join(reasoning_parts) or None,
                finish_reason=normalize_finish_reason(finish_reason, bool(tool_calls)),
                usage=usage,
            ),
        )
