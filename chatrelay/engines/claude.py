"""Claude Agent SDK engine backend."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    query,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from ..core.channel import StreamingChannel
from ..core.events import EngineEvent, ToolGate
from ..core.protocol import EngineOptions
from ..errors import EngineInvocationError

logger = logging.getLogger(__name__)

# Load hooks and settings from <working_dir>/.claude/settings.json
DEFAULT_SETTING_SOURCES = ["project"]


def _wrap_tool_gate(gate: ToolGate) -> Any:
    """Adapt a ``ToolGate`` to the SDK's ``can_use_tool`` callback."""

    async def can_use_tool(
        tool_name: str, tool_input: dict[str, Any], *_args: Any, **_kwargs: Any
    ) -> PermissionResultAllow | PermissionResultDeny:
        decision = await gate(tool_name, tool_input)
        if decision.allowed:
            updated = decision.updated_input if decision.updated_input is not None else tool_input
            return PermissionResultAllow(updated_input=updated)
        return PermissionResultDeny(message=decision.message or "User denied permission")

    return can_use_tool


def build_sdk_options(options: EngineOptions) -> ClaudeAgentOptions:
    """Translate engine options into ``ClaudeAgentOptions``."""
    kwargs: dict[str, Any] = {
        "cwd": options.working_dir,
        "model": options.model,
        "max_turns": options.max_turns,
        "permission_mode": options.permission_mode,
        "setting_sources": list(DEFAULT_SETTING_SOURCES),
    }
    if options.resume:
        kwargs["resume"] = options.resume
    if options.system_prompt:
        kwargs["system_prompt"] = options.system_prompt
    if options.mcp_servers:
        kwargs["mcp_servers"] = options.mcp_servers
    if options.thinking_budget > 0:
        kwargs["max_thinking_tokens"] = options.thinking_budget
    if options.can_use_tool is not None:
        kwargs["can_use_tool"] = _wrap_tool_gate(options.can_use_tool)
    return ClaudeAgentOptions(**kwargs)


def translate_message(message: Any) -> list[EngineEvent]:
    """Map one SDK message to zero or more engine events."""
    if isinstance(message, SystemMessage):
        if message.subtype == "init":
            session_id = (message.data or {}).get("session_id")
            if session_id:
                return [EngineEvent.session_init(session_id)]
        return []

    if isinstance(message, AssistantMessage):
        events: list[EngineEvent] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                events.append(EngineEvent.text(block.text))
            elif isinstance(block, ToolUseBlock):
                events.append(EngineEvent.tool_use(block.name, block.input or {}))
            elif isinstance(block, ThinkingBlock):
                events.append(EngineEvent.thinking(block.thinking or ""))
        return events

    if isinstance(message, ResultMessage):
        return [
            EngineEvent.result(
                session_id=message.session_id,
                text=message.result,
                cost_usd=message.total_cost_usd,
                duration_ms=message.duration_ms,
                is_error=message.is_error,
            )
        ]

    return []


class ClaudeAgentEngine:
    """``AgentEngine`` backed by ``claude_agent_sdk.query``.

    Permission callbacks require streaming input, so a plain prompt is wrapped
    in a one-shot closed channel whenever a tool gate is installed.
    """

    def __init__(self, *, setting_sources: list[str] | None = None) -> None:
        self.setting_sources = setting_sources

    def build_options(self, options: EngineOptions) -> ClaudeAgentOptions:
        sdk_options = build_sdk_options(options)
        if self.setting_sources is not None:
            sdk_options.setting_sources = list(self.setting_sources)
        return sdk_options

    async def run(
        self, prompt: str | StreamingChannel[Any], options: EngineOptions
    ) -> AsyncIterator[EngineEvent]:
        sdk_options = self.build_options(options)

        sdk_prompt: Any = prompt
        if isinstance(prompt, str) and options.can_use_tool is not None:
            channel: StreamingChannel[dict[str, Any]] = StreamingChannel(options.resume or "")
            channel.push_text(prompt)
            channel.close()
            sdk_prompt = channel

        try:
            async for message in query(prompt=sdk_prompt, options=sdk_options):
                for event in translate_message(message):
                    yield event
        except EngineInvocationError:
            raise
        except Exception as exc:
            logger.error("Claude engine failed: %s", exc)
            raise EngineInvocationError(f"Agent engine failed: {exc}") from exc
