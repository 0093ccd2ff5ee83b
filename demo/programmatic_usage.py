#!/usr/bin/env python3
"""Example: drive a conversation programmatically, with a follow-up injected mid-turn.

Example:
    uv run python demo/programmatic_usage.py ~/some/project "Summarize the error handling"
"""

import asyncio
import sys

from dotenv import load_dotenv

from chatrelay import (
    ConversationOrchestrator,
    PermissionMode,
    QueryCallbacks,
    SqliteSessionStore,
)
from chatrelay.engines import ClaudeAgentEngine
from chatrelay.log import configure_logging


async def run_conversation(working_dir: str, task: str) -> None:
    store = SqliteSessionStore(":memory:")
    orchestrator = ConversationOrchestrator(
        engine=ClaudeAgentEngine(),
        store=store,
        bot_name="demo",
        working_dir=working_dir,
        permission_mode=PermissionMode.BYPASS_PERMISSIONS,
    )

    def on_tool_use(name: str, tool_input: dict) -> None:
        print(f"  [tool] {name}")

    handle = orchestrator.dispatch("demo", task, QueryCallbacks(on_tool_use=on_tool_use))
    await asyncio.sleep(2)
    follow_up = orchestrator.dispatch("demo", "Keep the answer under ten bullet points.")
    print(f"Follow-up injected into running turn: {follow_up.injected}")

    result = await handle.wait()
    print(result.text)
    print(f"\nstatus={result.status} tools={result.tools_used} cost={result.cost_usd}")

    await orchestrator.shutdown()
    store.close()


def main() -> None:
    load_dotenv()
    configure_logging("warning")
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)
    asyncio.run(run_conversation(sys.argv[1], sys.argv[2]))


if __name__ == "__main__":
    main()
