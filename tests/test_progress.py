from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from chatrelay.core.events import EngineEvent
from chatrelay.core.progress import DEFAULT_INITIAL_MESSAGE, ProgressDescriber, describe_tool
from chatrelay.core.protocol import EngineOptions


class CannedEngine:
    def __init__(self, reply: str | None = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.options: list[EngineOptions] = []

    async def run(self, prompt: Any, options: EngineOptions) -> AsyncIterator[EngineEvent]:
        self.options.append(options)
        if self.error is not None:
            raise self.error
        if self.reply is not None:
            yield EngineEvent.text(self.reply)


def test_describe_tool_uses_lookup_table() -> None:
    assert describe_tool("Read", {"file_path": "/a/b.py"}) == "Reading b.py..."
    assert describe_tool("Grep", {"pattern": "x"}) == "Searching code..."
    assert describe_tool("Edit", {}) == "Editing..."


def test_describe_tool_fallbacks() -> None:
    assert describe_tool("mcp__github__create_issue") == "Calling github.create_issue..."
    assert describe_tool("Frobnicate") == "Running Frobnicate..."


@pytest.mark.asyncio
async def test_describer_without_engine_uses_table() -> None:
    describer = ProgressDescriber()

    assert await describer.initial_message("hi") == DEFAULT_INITIAL_MESSAGE
    assert await describer.describe("Bash", {"command": "ls"}) == "Running command..."


@pytest.mark.asyncio
async def test_describer_asks_engine_with_one_turn_query() -> None:
    engine = CannedEngine(reply="  Listing files  ")
    describer = ProgressDescriber(engine, working_dir="/repo")

    assert await describer.describe("Bash", {"command": "ls"}) == "Listing files"
    options = engine.options[0]
    assert options.max_turns == 1
    assert options.model == "haiku"
    assert options.working_dir == "/repo"


@pytest.mark.asyncio
async def test_describer_falls_back_on_engine_error() -> None:
    describer = ProgressDescriber(CannedEngine(error=RuntimeError("offline")))

    assert await describer.describe("Read", {"file_path": "x.txt"}) == "Reading x.txt..."
    assert await describer.initial_message("hi") == DEFAULT_INITIAL_MESSAGE


@pytest.mark.asyncio
async def test_disabled_describer_never_calls_engine() -> None:
    engine = CannedEngine(reply="nope")
    describer = ProgressDescriber(engine, enabled=False)

    assert await describer.describe("Glob", {}) == "Finding files..."
    assert engine.options == []
