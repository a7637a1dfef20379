"""Process-wide orchestrator used by the HTTP routers."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends

from src.agentic_runtime.history import HistoryManager
from src.agentic_runtime.loop import Orchestrator, TurnOptions
from src.agentic_runtime.registry import ToolRegistry
from src.agentic_runtime.tools import get_default_tools

logger = logging.getLogger(__name__)

_ORCHESTRATOR: Optional[Orchestrator] = None


def initialise_orchestrator() -> Orchestrator:
    """Create the orchestrator with the history store and built-in tools."""
    global _ORCHESTRATOR
    if _ORCHESTRATOR is not None:
        return _ORCHESTRATOR

    history = HistoryManager()
    registry = ToolRegistry(get_default_tools())
    _ORCHESTRATOR = Orchestrator(history, registry, options=TurnOptions.from_env())
    logger.info("Initialised orchestrator with tools %s", registry.names())
    return _ORCHESTRATOR


def set_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = orchestrator


def get_orchestrator(_: Orchestrator = Depends(initialise_orchestrator)) -> Orchestrator:
    if _ORCHESTRATOR is None:
        raise RuntimeError("Orchestrator has not been initialised")
    return _ORCHESTRATOR
