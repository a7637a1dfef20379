"""Runtime configuration: paths, defaults and environment overrides."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

from main_config import (
    DEFAULT_SYSTEM_PROMPT_PATH as _DEFAULT_SYSTEM_PROMPT_PATH,
    HISTORY_DB_PATH as _HISTORY_DB_PATH,
    PROMPTS_DIR as _PROMPTS_DIR,
)

load_dotenv()

# Path objects for use in this package (main_config uses os.path strings)
HISTORY_DB_PATH = Path(_HISTORY_DB_PATH)
PROMPTS_DIR = Path(_PROMPTS_DIR)
DEFAULT_SYSTEM_PROMPT_PATH = Path(_DEFAULT_SYSTEM_PROMPT_PATH)

DEFAULT_MODEL = "openai:gpt-4.1-nano"
DEFAULT_AGENT_ID = "default"
DEFAULT_MAX_ROUNDS = 8
DEFAULT_TOOL_TIMEOUT = 15.0
DEFAULT_TURN_TIMEOUT = 120.0
DEFAULT_PROVIDER_TIMEOUT = 60.0
DEFAULT_PROVIDER_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
DEFAULT_RETRY_MAX_DELAY = 8.0
DEFAULT_HISTORY_PAGE_SIZE = 20
MAX_HISTORY_PAGE_SIZE = 200

TURN_LIMIT_MESSAGE = (
    "Turn limit reached: I stopped after {rounds} tool rounds without a final answer. "
    "Ask me to continue if you want me to keep going."
)


def env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def history_db_path() -> str:
    """History database location; AGENTIC_HISTORY_DB overrides the default file."""
    return env_str("AGENTIC_HISTORY_DB", str(HISTORY_DB_PATH))
