"""LLM facade: provider resolution for model strings like ``openai:gpt-4.1-nano``."""

from __future__ import annotations

import logging
from typing import Tuple

from .config import DEFAULT_MODEL
from .providers import (
    GeminiProvider,
    LLMProvider,
    OllamaProvider,
    OpenAIProvider,
)

logger = logging.getLogger(__name__)

_default_provider: LLMProvider | None = None
_provider_cache: dict[str, LLMProvider] = {}


def _split_model(model: str) -> Tuple[str, str]:
    if ":" in model:
        provider_name, raw_model = model.split(":", 1)
        return provider_name.strip().lower(), raw_model.strip()
    return "ollama", model.strip()


def _create_provider(provider_name: str) -> LLMProvider:
    if provider_name == "openai":
        return OpenAIProvider()
    if provider_name in ("gemini", "google"):
        return GeminiProvider()
    if provider_name != "ollama":
        logger.warning("Unknown provider %r, falling back to Ollama", provider_name)
    return OllamaProvider()


def get_default_provider() -> LLMProvider:
    """Return the provider serving DEFAULT_MODEL."""
    global _default_provider
    if _default_provider is None:
        _default_provider, _ = get_provider_for_model(DEFAULT_MODEL)
    return _default_provider


def set_default_provider(provider: LLMProvider | None) -> None:
    """Set the default LLM provider (used when no model hint is given)."""
    global _default_provider
    _default_provider = provider


def get_provider_for_model(model: str | None) -> Tuple[LLMProvider, str]:
    """
    Resolve provider and underlying model name from a model string.

    Expected formats:
    - "provider:model_name" (e.g. "openai:gpt-4.1-nano", "gemini:gemini-2.5-flash")
    - "model_name" (no colon) → treated as an Ollama model.

    Without a model the default provider is used with its own default model.
    """
    if not model:
        if _default_provider is not None:
            return _default_provider, getattr(_default_provider, "default_model", "")
        model = DEFAULT_MODEL

    provider_name, model_name = _split_model(model)
    if provider_name not in _provider_cache:
        _provider_cache[provider_name] = _create_provider(provider_name)
    provider = _provider_cache[provider_name]
    return provider, model_name or getattr(provider, "default_model", "")
