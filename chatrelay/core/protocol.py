"""Agent engine protocol: the contract every engine backend must satisfy."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

from .channel import StreamingChannel
from .events import EngineEvent, ToolGate


@dataclass
class EngineOptions:
    """Per-invocation engine settings."""

    working_dir: str
    model: str = "sonnet"
    max_turns: int = 50
    permission_mode: str = "default"
    resume: str | None = None
    system_prompt: str | None = None
    mcp_servers: dict[str, Any] | None = None
    thinking_budget: int = 0
    can_use_tool: ToolGate | None = field(default=None, repr=False)

    def with_overrides(self, **changes: Any) -> EngineOptions:
        """Return a copy with ``changes`` applied, skipping ``None`` values."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


@runtime_checkable
class AgentEngine(Protocol):
    """Structural interface for agent engines.

    ``run`` accepts either a single prompt or a ``StreamingChannel`` of user
    messages and yields ``EngineEvent`` in order. Transport or protocol
    failures surface as ``EngineInvocationError``.
    """

    def run(
        self, prompt: str | StreamingChannel[Any], options: EngineOptions
    ) -> AsyncIterator[EngineEvent]: ...
