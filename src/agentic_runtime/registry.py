"""Tool registry: the set of tools a host makes available to the orchestrator."""

from __future__ import annotations

import logging

from .errors import DuplicateToolError
from .models import ToolDefinition
from .tools import BaseTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name-indexed tool registry.

    Registration does not validate definitions; ``validator.filter_valid``
    decides on every round which of them are offered to the model.

    Example:
        registry = ToolRegistry()
        registry.register(CalculatorTool())
        registry.register(FunctionTool("echo", "Echo text back", lambda text: text))
    """

    def __init__(self, tools: list[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BaseTool, *, replace: bool = False) -> None:
        name = tool.name
        if name in self._tools and not replace:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        logger.debug("Registered tool: %s", name)

    def unregister(self, name: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        removed = self._tools.pop(name, None)
        if removed is not None:
            logger.debug("Unregistered tool: %s", name)
        return removed is not None

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def definitions(self) -> list[ToolDefinition]:
        """Definitions in registration order, unvalidated."""
        return [tool.definition for tool in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
