"""Utilities for loading agent system prompts from disk."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from .config import DEFAULT_SYSTEM_PROMPT_PATH, PROMPTS_DIR

_cache: dict[Path, str] = {}
_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _read_file(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except OSError:
        return ""
    return text.strip()


def _cached(path: Path) -> str:
    if path not in _cache:
        _cache[path] = _read_file(path)
    return _cache[path]


def get_default_system_prompt() -> str:
    """Return the default system prompt text, cached after first read.

    If the prompt file does not exist or cannot be read, returns an empty string.
    """
    return _cached(DEFAULT_SYSTEM_PROMPT_PATH)


def get_system_prompt(agent_id: Optional[str] = None, prompts_dir: Optional[Path] = None) -> str:
    """Prompt for an agent: ``<prompts_dir>/<agent_id>.md`` if present, else the default."""
    if agent_id and _AGENT_ID_RE.match(agent_id):
        text = _cached((prompts_dir or PROMPTS_DIR) / f"{agent_id}.md")
        if text:
            return text
    return get_default_system_prompt()


def clear_cache() -> None:
    _cache.clear()
