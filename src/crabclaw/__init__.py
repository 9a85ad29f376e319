"""
CrabClaw - a deterministic orchestration core for a tool-using agent.

Input text is routed to a command, a shell command or the model. Model
turns run a bounded tool-calling loop, and everything that happens is
appended to a per-session tape, which is the only conversational state.
"""

from crabclaw.agent_loop import AgentLoop, AgentRuntime, TurnEvent, TurnResult
from crabclaw.config import AppConfig, ContextConfig, LLMConfig, LoopConfig, ToolConfig
from crabclaw.context import ContextAssembler
from crabclaw.errors import CrabClawError
from crabclaw.llm import LLMClient
from crabclaw.router import (
    AssistantRouteResult,
    CommandRouter,
    EnterModel,
    FallbackToModel,
    ShortCircuit,
)
from crabclaw.runner import ModelRunner
from crabclaw.tape import TapeEntry, TapeStore
from crabclaw.tools import ToolDefinition, ToolRegistry, builtin_registry
from crabclaw.types import ChatResponse, Message, Role, ToolCall, ToolResult

__version__ = "0.1.0"

__all__ = [
    "AgentLoop",
    "AgentRuntime",
    "AppConfig",
    "AssistantRouteResult",
    "ChatResponse",
    "CommandRouter",
    "ContextAssembler",
    "ContextConfig",
    "CrabClawError",
    "EnterModel",
    "FallbackToModel",
    "LLMClient",
    "LLMConfig",
    "LoopConfig",
    "Message",
    "ModelRunner",
    "Role",
    "ShortCircuit",
    "TapeEntry",
    "TapeStore",
    "ToolCall",
    "ToolConfig",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "TurnEvent",
    "TurnResult",
    "builtin_registry",
]
