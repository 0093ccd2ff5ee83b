"""Display helpers shared by the CLI commands."""

from __future__ import annotations

import importlib.metadata
from typing import Any

from rich.markup import escape

from ..core.events import QueryResult
from ..core.orchestrator import SessionStatus
from .state import MAX_MESSAGE_LENGTH
from .theme import THEME


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def _get_version() -> str:
    """Return the installed package version or 'dev' if not installed."""
    try:
        return importlib.metadata.version("chatrelay")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into chunks of at most ``max_length`` characters.

    Breaks after the last newline in the window when it falls in the second
    half, else after the last space there, else hard at ``max_length``.
    """
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break
        break_point = max_length
        newline = remaining.rfind("\n", 0, max_length + 1)
        if newline > max_length * 0.5:
            break_point = newline + 1
        else:
            space = remaining.rfind(" ", 0, max_length + 1)
            if space > max_length * 0.5:
                break_point = space + 1
        chunks.append(remaining[:break_point])
        remaining = remaining[break_point:]
    return chunks


def format_tool_signature(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    """Format a tool call like ``Read(file_path='/foo/bar.py')``."""
    if not tool_input:
        return f"{tool_name}()"
    if tool_name == "Bash" and "command" in tool_input:
        return f"{tool_name}({tool_input['command']})"
    parts = []
    for key, val in tool_input.items():
        if isinstance(val, str):
            parts.append(f"{key}='{val}'")
        else:
            parts.append(f"{key}={val}")
    return f"{tool_name}({', '.join(parts)})"


def format_status(status: SessionStatus) -> str:
    """Rich markup for the ``/status`` command."""
    lines = [
        f"Working directory: {_markup(status.working_dir, THEME.accent)}",
        "Has session: "
        + (_markup("yes", THEME.success) if status.has_session else _markup("no", THEME.muted)),
    ]
    if status.session_id:
        lines.append(f"Session id: {_markup(status.session_id[:8] + '...', THEME.accent)}")
    lines.append(
        "Turn: "
        + (_markup("running", THEME.warning) if status.active else _markup("idle", THEME.muted))
    )
    if status.pending_permissions:
        lines.append(
            f"Pending permissions: {_markup(str(status.pending_permissions), THEME.warning)}"
        )
    return "\n".join(lines)


def format_result_footer(result: QueryResult) -> str:
    """One dim line summarising a finished turn."""
    parts = [result.status]
    if result.duration_ms is not None:
        parts.append(f"{result.duration_ms / 1000:.1f}s")
    if result.cost_usd is not None:
        parts.append(f"${result.cost_usd:.4f}")
    if result.tools_used:
        parts.append("tools: " + ", ".join(result.tools_used))
    return _markup(" | ".join(parts), THEME.muted)
