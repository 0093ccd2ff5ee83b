"""Human-friendly one-line progress descriptions for tool calls."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import PurePath
from typing import Any

from .events import TEXT
from .protocol import AgentEngine, EngineOptions

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_SYSTEM_PROMPT = """\
You are a progress description generator. Generate a brief one-line description based on the context.

Rules:
- Maximum 30 characters
- No punctuation at the end
- Only output the description text, nothing else
- Use present continuous tense (e.g., "Reading file...", "Searching code...")
- Respond in the same language as the user's input"""

DEFAULT_INITIAL_MESSAGE = "Processing..."
PROGRESS_MODEL = "haiku"


def _basename(value: Any) -> str:
    return PurePath(str(value)).name if value else ""


def _with_target(verb: str, target: str) -> str:
    return f"{verb} {target}..." if target else f"{verb}..."


# Tool name -> formatter over the tool input. Unknown tools use the fallback.
TOOL_DESCRIPTIONS: dict[str, Callable[[dict[str, Any]], str]] = {
    "Read": lambda i: _with_target("Reading", _basename(i.get("file_path"))),
    "Write": lambda i: _with_target("Writing", _basename(i.get("file_path"))),
    "Edit": lambda i: _with_target("Editing", _basename(i.get("file_path"))),
    "MultiEdit": lambda i: _with_target("Editing", _basename(i.get("file_path"))),
    "NotebookEdit": lambda i: _with_target("Editing", _basename(i.get("notebook_path"))),
    "Bash": lambda i: "Running command...",
    "Glob": lambda i: "Finding files...",
    "Grep": lambda i: "Searching code...",
    "LS": lambda i: "Listing files...",
    "WebFetch": lambda i: "Fetching web page...",
    "WebSearch": lambda i: "Searching the web...",
    "Task": lambda i: "Delegating subtask...",
    "TodoWrite": lambda i: "Updating todo list...",
}


def describe_tool(tool_name: str, tool_input: dict[str, Any] | None = None) -> str:
    """Describe a tool call from the lookup table, with a generic fallback."""
    formatter = TOOL_DESCRIPTIONS.get(tool_name)
    if formatter is not None:
        return formatter(tool_input or {})
    if tool_name.startswith("mcp__"):
        parts = tool_name.split("__")
        if len(parts) >= 3:
            return f"Calling {parts[1]}.{'__'.join(parts[2:])}..."
    return f"Running {tool_name}..."


class ProgressDescriber:
    """Generates short status lines, optionally via a small model.

    Without an engine (or when disabled) descriptions come from
    ``TOOL_DESCRIPTIONS``. With an engine, a one-turn query asks the model for
    a description; any failure or empty answer falls back to the table.
    """

    def __init__(
        self,
        engine: AgentEngine | None = None,
        *,
        enabled: bool = True,
        system_prompt: str | None = None,
        working_dir: str = ".",
        model: str = PROGRESS_MODEL,
    ) -> None:
        self.engine = engine
        self.enabled = enabled
        self.system_prompt = system_prompt or DEFAULT_PROGRESS_SYSTEM_PROMPT
        self.working_dir = working_dir
        self.model = model

    async def initial_message(self, user_message: str) -> str:
        """Status line shown before the agent produces anything."""
        if not self.enabled or self.engine is None:
            return DEFAULT_INITIAL_MESSAGE
        prompt = (
            f'User message: "{user_message[:100]}"\n\n'
            'Generate a "processing" status message.'
        )
        return await self._ask(prompt) or DEFAULT_INITIAL_MESSAGE

    async def describe(self, tool_name: str, tool_input: dict[str, Any]) -> str:
        """Status line for a tool call."""
        fallback = describe_tool(tool_name, tool_input)
        if not self.enabled or self.engine is None:
            return fallback
        input_str = json.dumps(tool_input, default=str, ensure_ascii=False)[:300]
        return await self._ask(f"Tool: {tool_name}\nInput: {input_str}") or fallback

    async def _ask(self, prompt: str) -> str:
        options = EngineOptions(
            working_dir=self.working_dir,
            model=self.model,
            max_turns=1,
            permission_mode="bypassPermissions",
            system_prompt=self.system_prompt,
        )
        chunks: list[str] = []
        try:
            async for event in self.engine.run(prompt, options):  # type: ignore[union-attr]
                if event.type == TEXT and event.content:
                    chunks.append(event.content)
        except Exception as exc:
            logger.warning("Failed to generate progress description: %s", exc)
            return ""
        return "".join(chunks).strip()
