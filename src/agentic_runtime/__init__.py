"""Agentic runtime: LLM–tool turn loop with sequenced history and streamed events."""

from .errors import (
    AgenticRuntimeError,
    IntegrityError,
    ProviderError,
    ProviderRequestError,
    ProviderTransportError,
    SessionNotFoundError,
)
from .executor import ToolExecutor
from .history import HistoryManager
from .llm import get_default_provider, get_provider_for_model, set_default_provider
from .loop import Orchestrator, OrchestratorMetrics, TurnOptions, TurnOutcome, TurnState
from .models import (
    AgentProfile,
    Message,
    MessageDraft,
    NormalizedResponse,
    ToolCallRequest,
    ToolDefinition,
    ToolExecutionResult,
    ToolResult,
)
from .providers import GeminiProvider, LLMProvider, OllamaProvider, OpenAIProvider, StreamChunk
from .registry import ToolRegistry
from .streaming import TurnEventChannel, encode_sse
from .tools import BaseTool, CalculatorTool, FunctionTool, GetTimeTool, HttpTool
from .validator import filter_valid

__all__ = [
    "Orchestrator",
    "TurnOptions",
    "TurnOutcome",
    "OrchestratorMetrics",
    "TurnState",
    "HistoryManager",
    "ToolRegistry",
    "ToolExecutor",
    "filter_valid",
    "BaseTool",
    "FunctionTool",
    "HttpTool",
    "GetTimeTool",
    "CalculatorTool",
    "TurnEventChannel",
    "encode_sse",
    "AgentProfile",
    "Message",
    "MessageDraft",
    "NormalizedResponse",
    "ToolCallRequest",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolResult",
    "LLMProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "GeminiProvider",
    "StreamChunk",
    "get_default_provider",
    "get_provider_for_model",
    "set_default_provider",
    "AgenticRuntimeError",
    "ProviderError",
    "ProviderRequestError",
    "ProviderTransportError",
    "IntegrityError",
    "SessionNotFoundError",
]
