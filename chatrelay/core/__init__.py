"""Core conversation machinery: channels, permissions and the orchestrator."""

from .channel import StreamingChannel
from .config import AppConfig, BotConfig, PermissionMode, load_from_env, load_from_env_file
from .events import EngineEvent, QueryCallbacks, QueryResult, ToolDecision
from .orchestrator import (
    ConversationOrchestrator,
    ConversationState,
    InvocationHandle,
    SessionStatus,
)
from .permissions import PermissionBroker, PermissionResponse
from .progress import ProgressDescriber, describe_tool
from .protocol import AgentEngine, EngineOptions

__all__ = [
    "AgentEngine",
    "AppConfig",
    "BotConfig",
    "ConversationOrchestrator",
    "ConversationState",
    "EngineEvent",
    "EngineOptions",
    "InvocationHandle",
    "PermissionBroker",
    "PermissionMode",
    "PermissionResponse",
    "ProgressDescriber",
    "QueryCallbacks",
    "QueryResult",
    "SessionStatus",
    "StreamingChannel",
    "ToolDecision",
    "describe_tool",
    "load_from_env",
    "load_from_env_file",
]
