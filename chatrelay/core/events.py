"""Shared event types and callbacks for the orchestration layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

# Stable identifier of one conversation with a user or group.
ChatId = str | int

# Prompt/result previews in logs are cut to this many characters.
LOG_PREVIEW_CHARS = 300

# Engine event types
SESSION_INIT = "session_init"
TEXT = "text"
TOOL_USE = "tool_use"
THINKING = "thinking"
RESULT = "result"

# Callback types; each may return an awaitable.
ProgressCallback = Callable[[str], None | Awaitable[None]]
ToolUseCallback = Callable[[str, dict[str, Any]], None | Awaitable[None]]
ThinkingCallback = Callable[[str], None | Awaitable[None]]


@dataclass
class EngineEvent:
    """One event from the agent engine's output stream.

    The ``type`` field determines which other fields are populated:

    - ``session_init``: engine assigned/confirmed a session (``session_id``).
    - ``text``: assistant text chunk (``content``).
    - ``tool_use``: the engine is invoking a tool (``tool_name``, ``tool_input``).
    - ``thinking``: reasoning chunk (``content``).
    - ``result``: terminal result of a turn (``content`` is the final text,
      ``session_id``, ``tools_used``, ``cost_usd``, ``duration_ms``).
    """

    type: str
    session_id: str | None = None
    content: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tools_used: tuple[str, ...] = ()
    cost_usd: float | None = None
    duration_ms: int | None = None
    is_error: bool = False

    @classmethod
    def session_init(cls, session_id: str) -> EngineEvent:
        return cls(type=SESSION_INIT, session_id=session_id)

    @classmethod
    def text(cls, content: str) -> EngineEvent:
        return cls(type=TEXT, content=content)

    @classmethod
    def tool_use(cls, name: str, tool_input: dict[str, Any] | None = None) -> EngineEvent:
        return cls(type=TOOL_USE, tool_name=name, tool_input=dict(tool_input or {}))

    @classmethod
    def thinking(cls, content: str) -> EngineEvent:
        return cls(type=THINKING, content=content)

    @classmethod
    def result(
        cls,
        *,
        session_id: str | None = None,
        text: str | None = None,
        tools_used: tuple[str, ...] = (),
        cost_usd: float | None = None,
        duration_ms: int | None = None,
        is_error: bool = False,
    ) -> EngineEvent:
        return cls(
            type=RESULT,
            session_id=session_id,
            content=text,
            tools_used=tuple(tools_used),
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            is_error=is_error,
        )


@dataclass
class ToolDecision:
    """Outcome of the tool gate for one tool call."""

    allowed: bool
    message: str | None = None
    updated_input: dict[str, Any] | None = None


# (tool_name, tool_input) -> decision; installed on the engine when the
# permission mode requires confirmation.
ToolGate = Callable[[str, dict[str, Any]], Awaitable[ToolDecision]]


@dataclass
class QueryCallbacks:
    """Progress callbacks for one turn. Any of them may be omitted."""

    on_progress: ProgressCallback | None = None
    on_tool_use: ToolUseCallback | None = None
    on_thinking: ThinkingCallback | None = None


@dataclass
class QueryResult:
    """Aggregated outcome of one turn.

    ``status`` is ``"completed"`` when the engine produced a terminal result,
    ``"cancelled"`` when the turn was cancelled before one arrived, and
    ``"incomplete"`` when the engine's stream ended without one.
    """

    text: str
    session_id: str | None
    tools_used: list[str] = field(default_factory=list)
    cost_usd: float | None = None
    duration_ms: int | None = None
    status: str = "completed"


def preview(text: str, limit: int = LOG_PREVIEW_CHARS) -> str:
    """Truncate ``text`` for log output."""
    if len(text) <= limit:
        return text
    return text[:limit] + "...[truncated]"
