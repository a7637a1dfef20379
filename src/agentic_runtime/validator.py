"""Tool definition validation applied before every tool-offering provider call."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from jsonschema import exceptions as jsonschema_exceptions
from jsonschema import validators

from .models import ToolDefinition

logger = logging.getLogger(__name__)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def invalid_reason(tool: ToolDefinition) -> str | None:
    """Why a definition cannot be offered to a provider, or None if it can."""
    if not _is_text(getattr(tool, "name", None)):
        return "name is missing or blank"
    if not _is_text(getattr(tool, "description", None)):
        return "description is missing or blank"
    schema = getattr(tool, "parameters_schema", None)
    if not isinstance(schema, dict):
        return "parameters_schema is not a JSON object"
    try:
        validators.validator_for(schema).check_schema(schema)
    except jsonschema_exceptions.SchemaError as exc:
        return f"parameters_schema is not a valid JSON Schema: {exc.message}"
    return None


def filter_valid(tools: Iterable[ToolDefinition]) -> list[ToolDefinition]:
    """Keep only well-formed tool definitions, in their original order.

    Invalid entries are dropped rather than repaired, and later duplicates of
    a name lose to the first occurrence. Never raises; applying it to its own
    output returns the same list.
    """
    valid: list[ToolDefinition] = []
    seen: set[str] = set()
    for tool in tools:
        reason = invalid_reason(tool)
        if reason is None and tool.name in seen:
            reason = "duplicate name"
        if reason is not None:
            logger.warning("Dropping tool definition %r: %s", getattr(tool, "name", None), reason)
            continue
        seen.add(tool.name)
        valid.append(tool)
    return valid
