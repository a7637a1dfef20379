"""Tool protocol, execution strategies and built-in tools."""

from __future__ import annotations

import ast
import asyncio
import inspect
import math
import operator
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx

from .models import ToolDefinition, ToolResult


class BaseTool(ABC):
    """Base class for orchestrator tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for parameters."""
        return {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(self, params: dict[str, Any]) -> Any:
        """Run the tool. Return a JSON-serializable value or a ``ToolResult``."""
        ...

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters_schema=self.parameters,
        )

    def to_tool_schema(self) -> dict[str, Any]:
        """Standard function-calling schema for any LLM provider."""
        return self.definition.to_tool_schema()


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class FunctionTool(BaseTool):
    """In-process tool backed by a plain callable.

    Coroutine functions are awaited; regular functions run in a worker thread
    so a slow tool cannot stall the event loop.
    """

    def __init__(
        self,
        name: str,
        description: str,
        func: Callable[..., Any],
        parameters: dict[str, Any] | None = None,
    ) -> None:
        self._name = name
        self._description = description
        self._func = func
        self._parameters = parameters or {"type": "object", "properties": {}}

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, params: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self._func):
            return await self._func(**params)
        return await asyncio.to_thread(self._func, **params)


class HttpTool(BaseTool):
    """Remote tool: arguments are POSTed as JSON, the JSON response is the result."""

    def __init__(
        self,
        name: str,
        description: str,
        url: str,
        parameters: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._name = name
        self._description = description
        self._parameters = parameters or {"type": "object", "properties": {}}
        self.url = url
        self.headers = headers or {}
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, params: dict[str, Any]) -> Any:
        if self._client is not None:
            response = await self._client.post(self.url, json=params, headers=self.headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, json=params, headers=self.headers)
        if response.status_code >= 400:
            return ToolResult(
                success=False,
                error=f"HTTP {response.status_code} from {self.url}",
                metadata={"status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError:
            return response.text


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


class GetTimeTool(BaseTool):
    """Returns current UTC time as ISO string."""

    @property
    def name(self) -> str:
        return "get_time"

    @property
    def description(self) -> str:
        return "Get the current UTC date and time in ISO format."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}, "required": []}

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        now = datetime.now(timezone.utc).isoformat()
        return ToolResult(success=True, content=now)


_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "sqrt": math.sqrt,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
}
_CONSTANTS = {"pi": math.pi, "e": math.e}
_MAX_EXPONENT = 100
# Integers stay well below the int-to-str conversion limit (4300 digits).
_MAX_INT_BITS = 4096


def evaluate_expression(expression: str) -> float | int:
    """Evaluate an arithmetic expression without ``eval``.

    Raises ``ValueError`` for anything that is not plain arithmetic or whose
    integer operands or results grow past ``_MAX_INT_BITS``.
    """
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"Invalid expression: {expression!r}") from exc
    return _eval_node(tree.body)


def _bounded(value: Any) -> Any:
    if isinstance(value, int) and value.bit_length() > _MAX_INT_BITS:
        raise ValueError("Result too large")
    return value


def _check_power(base: Any, exponent: Any) -> None:
    if abs(exponent) > _MAX_EXPONENT:
        raise ValueError("Exponent too large")
    if isinstance(base, int) and isinstance(exponent, int) and abs(base).bit_length() * exponent > _MAX_INT_BITS:
        raise ValueError("Result too large")


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return _bounded(node.value)
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        return _bounded(_BIN_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and not node.keywords
    ):
        return _bounded(_FUNCTIONS[node.func.id](*(_eval_node(a) for a in node.args)))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


class CalculatorTool(BaseTool):
    """Evaluates arithmetic expressions."""

    @property
    def name(self) -> str:
        return "calculator"

    @property
    def description(self) -> str:
        return (
            "Evaluate an arithmetic expression, e.g. '2 + 2' or 'sqrt(16) * 3'. "
            "Supports + - * / // % **, parentheses, sqrt, abs, round, min, max, pi and e."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "The expression to evaluate"},
            },
            "required": ["expression"],
        }

    async def execute(self, params: dict[str, Any]) -> Any:
        expression = params["expression"].strip()
        try:
            result = await asyncio.to_thread(evaluate_expression, expression)
        except (ValueError, ZeroDivisionError, OverflowError, TypeError) as e:
            return ToolResult(success=False, error=str(e))
        if isinstance(result, float) and result.is_integer():
            result = int(result)
        return {"expression": expression, "result": result}


def get_default_tools() -> list[BaseTool]:
    """Built-in tools registered by the HTTP app."""
    return [GetTimeTool(), CalculatorTool()]
