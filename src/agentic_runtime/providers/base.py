"""Abstract LLM provider interface for the orchestrator."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..config import (
    DEFAULT_PROVIDER_MAX_ATTEMPTS,
    DEFAULT_PROVIDER_TIMEOUT,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
)
from ..errors import ProviderRequestError, ProviderTransportError
from ..models import FinishReason, Message, NormalizedResponse, ToolCallRequest, ToolDefinition

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Awaitable[None]]

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "end_turn": "stop",
    "complete": "stop",
    "finish_reason_unspecified": "stop",
    "length": "length",
    "max_tokens": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "tool_use": "tool_calls",
    "content_filter": "error",
    "safety": "error",
    "recitation": "error",
    "blocklist": "error",
    "prohibited_content": "error",
    "malformed_function_call": "error",
    "error": "error",
}


@dataclass
class StreamChunk:
    """One chunk from an LLM stream."""

    type: str  # "text_delta" | "reasoning_delta" | "done"
    content: str = ""
    response: NormalizedResponse | None = None


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter for transport failures."""

    max_attempts: int = DEFAULT_PROVIDER_MAX_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    attempt_timeout: float | None = DEFAULT_PROVIDER_TIMEOUT

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (1-based): half fixed, half jitter."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return random.uniform(ceiling / 2, ceiling)

    def wait(self, retry_state: RetryCallState) -> float:
        """tenacity wait strategy backed by ``delay_for``."""
        return self.delay_for(retry_state.attempt_number)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def encode_arguments(raw: Any) -> str:
    """Arguments as a JSON string. Strings pass through untouched, even if malformed."""
    if raw is None:
        return "{}"
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, ensure_ascii=False)


def normalize_finish_reason(raw: Any, has_tool_calls: bool) -> FinishReason:
    """Map a vendor finish reason onto stop|tool_calls|length|error.

    Any emitted tool call wins; a ``tool_calls`` reason without calls is a stop.
    """
    if has_tool_calls:
        return "tool_calls"
    if raw is None:
        return "stop"
    key = str(getattr(raw, "name", raw)).strip().lower()
    reason = _FINISH_REASONS.get(key, "stop")
    return "stop" if reason == "tool_calls" else reason


class LLMProvider(ABC):
    """
    Abstract LLM provider. Implement this to plug in any backend (Ollama, OpenAI, etc.).

    The orchestrator only depends on this interface: ``respond`` returns a
    ``NormalizedResponse`` whether or not the call was streamed, and
    vendor-specific shapes never leave the implementation.
    """

    name: str = "provider"

    def __init__(self, retry: RetryPolicy | None = None) -> None:
        self.retry = retry or RetryPolicy()

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> NormalizedResponse:
        """Non-streaming chat.

        ``tools=None`` means no tools are sent at all. Implementations raise
        ``ProviderTransportError`` or ``ProviderRequestError`` on failure.
        """
        ...

    @abstractmethod
    def stream_chat(
        self,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamChunk]:
        """Stream chat; yields deltas and a final ``done`` chunk carrying the response."""
        ...

    async def respond(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        *,
        streaming: bool = False,
        on_token: TokenCallback | None = None,
        on_reasoning: TokenCallback | None = None,
        model: str | None = None,
        **kwargs: Any,
    ) -> NormalizedResponse:
        """Call the provider with retries for transport failures only.

        A streamed attempt is only retried when nothing was forwarded to the
        caller yet, so consumers never see duplicated tokens.
        """
        forwarded = [False]

        def retryable(exc: BaseException) -> bool:
            return isinstance(exc, ProviderTransportError) and not forwarded[0]

        def before_sleep(state: RetryCallState) -> None:
            logger.warning(
                "%s transport error (attempt %d/%d), retrying in %.2fs: %s",
                self.name,
                state.attempt_number,
                self.retry.max_attempts,
                state.next_action.sleep if state.next_action else 0.0,
                state.outcome.exception() if state.outcome else None,
            )

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self.retry.max_attempts)),
            wait=self.retry.wait,
            retry=retry_if_exception(retryable),
            before_sleep=before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if streaming:
                        call = self._consume_stream(
                            messages, tools, model, on_token, on_reasoning, forwarded, kwargs
                        )
                    else:
                        call = self.chat(messages, model=model, tools=tools, **kwargs)
                    return await self._with_timeout(call)
        except ProviderRequestError as exc:
            logger.error(
                "%s rejected the request (status=%s); tool schemas or payload are invalid: %s",
                self.name,
                exc.status_code,
                exc,
            )
            raise
        except ProviderTransportError as exc:
            logger.error(
                "%s failed after %d attempt(s): %s",
                self.name,
                retrying.statistics.get("attempt_number", 1),
                exc,
            )
            raise
        raise ProviderTransportError(f"{self.name} gave up without an answer", provider=self.name)

    async def _with_timeout(self, call: Awaitable[NormalizedResponse]) -> NormalizedResponse:
        if self.retry.attempt_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.retry.attempt_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTransportError(
                f"{self.name} did not answer within {self.retry.attempt_timeout}s",
                provider=self.name,
            ) from exc

    async def _consume_stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        model: str | None,
        on_token: TokenCallback | None,
        on_reasoning: TokenCallback | None,
        forwarded: list[bool],
        kwargs: dict[str, Any],
    ) -> NormalizedResponse:
        async for chunk in self.stream_chat(messages, model=model, tools=tools, **kwargs):
            if chunk.type == "text_delta" and chunk.content:
                if on_token is not None:
                    forwarded[0] = True
                    await on_token(chunk.content)
            elif chunk.type == "reasoning_delta" and chunk.content:
                if on_reasoning is not None:
                    forwarded[0] = True
                    await on_reasoning(chunk.content)
            elif chunk.type == "done" and chunk.response is not None:
                return chunk.response
        raise ProviderTransportError(f"{self.name} stream ended without a final chunk", provider=self.name)


def tool_call(name: str, arguments: Any = None, call_id: str | None = None) -> ToolCallRequest:
    """Build a normalized tool call from vendor pieces."""
    return ToolCallRequest(id=call_id or new_call_id(), name=name or "", arguments_json=encode_arguments(arguments))
