"""chatrelay: bridge chat conversations to a coding agent with live follow-ups."""

__version__ = "0.1.0"

from .core import (
    AgentEngine,
    AppConfig,
    BotConfig,
    ConversationOrchestrator,
    EngineEvent,
    EngineOptions,
    InvocationHandle,
    PermissionBroker,
    PermissionMode,
    PermissionResponse,
    QueryCallbacks,
    QueryResult,
    StreamingChannel,
    load_from_env,
)
from .storage import SessionStore, SqliteSessionStore

__all__ = [
    "__version__",
    "AgentEngine",
    "AppConfig",
    "BotConfig",
    "ConversationOrchestrator",
    "EngineEvent",
    "EngineOptions",
    "InvocationHandle",
    "PermissionBroker",
    "PermissionMode",
    "PermissionResponse",
    "QueryCallbacks",
    "QueryResult",
    "SessionStore",
    "SqliteSessionStore",
    "StreamingChannel",
    "load_from_env",
]
