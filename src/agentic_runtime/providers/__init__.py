"""LLM providers: pluggable backends for the agent orchestrator."""

from .base import LLMProvider, RetryPolicy, StreamChunk, new_call_id, normalize_finish_reason
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider
from .gemini_provider import GeminiProvider

__all__ = [
    "LLMProvider",
    "RetryPolicy",
    "StreamChunk",
    "new_call_id",
    "normalize_finish_reason",
    "OllamaProvider",
    "OpenAIProvider",
    "GeminiProvider",
]
