"""Tool executor: runs one tool call and always returns a result."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from jsonschema import exceptions as jsonschema_exceptions
from jsonschema import validators

from .config import DEFAULT_TOOL_TIMEOUT
from .models import ToolExecutionResult, ToolResult
from .registry import ToolRegistry

logger = logging.getLogger(__name__)


def parse_arguments(arguments_json: str | None) -> dict[str, Any]:
    """Decode call arguments. Raises ValueError unless they form a JSON object."""
    raw = arguments_json if arguments_json and arguments_json.strip() else "{}"
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Arguments are not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(value).__name__}")
    return value


def _payload(value: Any) -> str:
    if not isinstance(value, dict):
        value = {"result": value}
    return json.dumps(value, ensure_ascii=False, default=str)


class ToolExecutor:
    """Executes tool calls against a registry with a bounded timeout.

    Every failure mode (unknown tool, malformed arguments, schema mismatch,
    exception, timeout, a result that cannot be encoded as JSON) becomes an
    error ``ToolExecutionResult`` whose payload is ``{"error": ...}``. Only
    cancellation propagates.
    """

    def __init__(self, registry: ToolRegistry, default_timeout: float = DEFAULT_TOOL_TIMEOUT) -> None:
        self.registry = registry
        self.default_timeout = default_timeout

    async def execute(
        self,
        tool_call_id: str,
        name: str,
        arguments_json: str | None,
        timeout: float | None = None,
    ) -> ToolExecutionResult:
        timeout = self.default_timeout if timeout is None else timeout
        started = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        tool = self.registry.get(name)
        if tool is None:
            return ToolExecutionResult.error(tool_call_id, name, f"Unknown tool: {name}")

        try:
            params = parse_arguments(arguments_json)
        except ValueError as exc:
            return ToolExecutionResult.error(tool_call_id, name, str(exc))

        try:
            schema = tool.parameters
            validators.validator_for(schema)(schema).validate(params)
        except jsonschema_exceptions.ValidationError as exc:
            path = "/".join(str(p) for p in exc.absolute_path)
            return ToolExecutionResult.error(
                tool_call_id,
                name,
                f"Invalid arguments: {exc.message}",
                path=path or None,
            )
        except jsonschema_exceptions.SchemaError as exc:
            return ToolExecutionResult.error(tool_call_id, name, f"Tool schema is invalid: {exc.message}")

        try:
            value = await asyncio.wait_for(tool.execute(params), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s (%s) timed out after %.1fs", name, tool_call_id, timeout)
            return ToolExecutionResult.error(
                tool_call_id,
                name,
                f"Tool '{name}' timed out after {timeout:g}s",
                duration_ms=elapsed_ms(),
                timeout=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Tool %s (%s) raised: %s", name, tool_call_id, e, exc_info=True)
            return ToolExecutionResult.error(
                tool_call_id,
                name,
                f"{type(e).__name__}: {e}",
                duration_ms=elapsed_ms(),
            )

        if isinstance(value, ToolResult):
            if not value.success:
                return _failure(tool_call_id, name, value, elapsed_ms())
            value = value.content

        try:
            payload_json = _payload(value)
        except (TypeError, ValueError) as exc:
            logger.warning("Tool %s (%s) returned an unserializable result: %s", name, tool_call_id, exc)
            return ToolExecutionResult.error(
                tool_call_id,
                name,
                f"Tool result is not JSON-serializable: {exc}",
                duration_ms=elapsed_ms(),
            )

        return ToolExecutionResult(
            tool_call_id=tool_call_id,
            name=name,
            status="ok",
            payload_json=payload_json,
            duration_ms=elapsed_ms(),
        )


def _failure(tool_call_id: str, name: str, result: ToolResult, duration_ms: int) -> ToolExecutionResult:
    message = result.error or "Tool reported failure"
    if result.metadata:
        try:
            return ToolExecutionResult.error(
                tool_call_id, name, message, duration_ms=duration_ms, details=result.metadata
            )
        except (TypeError, ValueError):
            logger.debug("Dropping unserializable metadata of %s (%s)", name, tool_call_id)
    return ToolExecutionResult.error(tool_call_id, name, message, duration_ms=duration_ms)
