"""Console chat transport: a prompt_toolkit REPL in front of the orchestrator."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.markdown import Markdown
from rich.panel import Panel

from ..core.config import BotConfig
from ..core.events import ChatId, QueryCallbacks
from ..core.orchestrator import ConversationOrchestrator, InvocationHandle
from ..core.permissions import PermissionResponse
from ..core.progress import ProgressDescriber
from ..engines.claude import ClaudeAgentEngine
from ..errors import ChatRelayError, ConfigError, EngineInvocationError
from ..log import configure_logging
from ..storage.session_store import SqliteSessionStore
from .formatting import (
    _get_version,
    _markup,
    format_result_footer,
    format_status,
    format_tool_signature,
    split_message,
)
from .state import CONFIG_DIR, HISTORY_FILE, app, console, load_app_config
from .theme import THEME

HELP_TEXT = """\
/allow [id]   approve a pending tool call
/always [id]  approve and stop asking for this tool
/deny [id]    reject a pending tool call
/new          start a new conversation (clears context)
/clear        delete the session completely
/status       show session status
/cancel       stop the running turn after its current step
/help         show this help
/exit         quit

Messages sent while a turn is running are passed to it as follow-ups."""


class ConsoleRelay:
    """Relays one console conversation through a ``ConversationOrchestrator``."""

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        chat_id: ChatId,
        progress: ProgressDescriber,
    ) -> None:
        self.orchestrator = orchestrator
        self.chat_id = chat_id
        self.progress = progress
        self._turns: set[asyncio.Task[None]] = set()
        orchestrator.set_permission_notifier(self.notify_permission)

    async def notify_permission(
        self, chat_id: ChatId, permission_id: str, tool_name: str, tool_input: dict[str, Any]
    ) -> None:
        console.print(
            Panel(
                _markup(format_tool_signature(tool_name, tool_input), THEME.accent)
                + "\n"
                + _markup(
                    f"/allow {permission_id}  /always {permission_id}  /deny {permission_id}",
                    THEME.muted,
                ),
                title=_markup("permission", THEME.warning),
                title_align="left",
                border_style=THEME.warning,
                padding=(0, 1),
            )
        )

    def _callbacks(self) -> QueryCallbacks:
        async def on_tool_use(tool_name: str, tool_input: dict[str, Any]) -> None:
            description = await self.progress.describe(tool_name, tool_input)
            console.print(_markup(description, THEME.progress))

        def on_thinking(content: str) -> None:
            console.print(_markup(content.strip()[:200], THEME.thinking))

        return QueryCallbacks(on_tool_use=on_tool_use, on_thinking=on_thinking)

    def submit(self, text: str) -> None:
        """Send a user line: a follow-up if a turn is running, else a new turn."""
        handle = self.orchestrator.dispatch(self.chat_id, text, self._callbacks())
        if handle.injected:
            console.print(_markup("Added to the running turn", THEME.muted))
            return
        task = asyncio.create_task(self._report(handle, text))
        self._turns.add(task)
        task.add_done_callback(self._turns.discard)

    async def _report(self, handle: InvocationHandle, text: str) -> None:
        console.print(_markup(await self.progress.initial_message(text), THEME.progress))
        try:
            result = await handle.wait()
        except EngineInvocationError as exc:
            console.print(_markup(f"Error: {exc}", THEME.error))
            return
        if result.text:
            for chunk in split_message(result.text):
                console.print(Markdown(chunk))
        else:
            console.print(_markup("No response received from the agent.", THEME.warning))
        console.print(format_result_footer(result))

    def _resolve(self, permission_id: str | None, response: PermissionResponse) -> None:
        if permission_id is None:
            pending = self.orchestrator.permission_broker.pending_for_chat(self.chat_id)
            if not pending:
                console.print(_markup("No pending permission requests", THEME.muted))
                return
            permission_id = max(pending, key=lambda p: p.created_at).id
        if not self.orchestrator.permission_broker.resolve_permission(permission_id, response):
            console.print(_markup(f"Permission {permission_id} already resolved", THEME.muted))

    def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the user asked to exit."""
        command, _, arg = line.partition(" ")
        arg = arg.strip() or None
        if command in ("/exit", "/quit"):
            return False
        if command == "/help":
            console.print(HELP_TEXT, markup=False)
        elif command == "/allow":
            self._resolve(arg, PermissionResponse(allowed=True))
        elif command == "/always":
            self._resolve(arg, PermissionResponse(allowed=True, always_allow=True))
        elif command == "/deny":
            self._resolve(arg, PermissionResponse(allowed=False, message="User denied permission"))
        elif command == "/new":
            self.orchestrator.clear_session(self.chat_id)
            console.print(_markup("New conversation started", THEME.success))
        elif command == "/clear":
            self.orchestrator.delete_session(self.chat_id)
            console.print(_markup("Session cleared completely", THEME.success))
        elif command == "/status":
            console.print(format_status(self.orchestrator.get_session_status(self.chat_id)))
        elif command == "/cancel":
            if self.orchestrator.cancel(self.chat_id):
                console.print(_markup("Cancelling after the current step...", THEME.warning))
            else:
                console.print(_markup("Nothing is running", THEME.muted))
        else:
            console.print(_markup(f"Unknown command: {command}. Try /help", THEME.warning))
        return True

    async def run(self) -> None:
        """Read lines until ``/exit`` or EOF, then wait for running turns."""
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        prompt_session: PromptSession[str] = PromptSession(history=FileHistory(str(HISTORY_FILE)))

        console.print(
            Panel(
                f"[bold]{_markup('chatrelay', THEME.primary)}[/bold] v{_get_version()}\n"
                f"Bot: {_markup(self.orchestrator.bot_name, THEME.accent)}\n"
                f"Working directory: {_markup(self.orchestrator.working_dir, THEME.accent)}\n"
                "Type [bold]/help[/bold] for commands, [bold]/exit[/bold] to quit.",
                border_style=THEME.border,
            )
        )

        with patch_stdout():
            while True:
                try:
                    line = await prompt_session.prompt_async(
                        HTML(f"<style fg='{THEME.prompt}'><b>&gt;</b></style> ")
                    )
                except (EOFError, KeyboardInterrupt):
                    break
                line = line.strip()
                if not line:
                    continue
                if line.startswith("/"):
                    if not self.handle_command(line):
                        break
                    continue
                self.submit(line)

            await self.orchestrator.shutdown()
            if self._turns:
                await asyncio.gather(*self._turns, return_exceptions=True)
        console.print(_markup("Goodbye!", THEME.muted))


def build_orchestrator(
    bot: BotConfig, db_path: str
) -> tuple[ConversationOrchestrator, SqliteSessionStore]:
    store = SqliteSessionStore(db_path)
    orchestrator = ConversationOrchestrator.from_config(
        bot, engine=ClaudeAgentEngine(), store=store
    )
    return orchestrator, store


@app.command()
def chat(
    env_file: Path | None = typer.Option(None, "--env", help="Load settings from this .env file."),
    config_file: Path | None = typer.Option(
        None, "--config", "-c", help="Load settings from a YAML file."
    ),
    bot_name: str | None = typer.Option(None, "--bot", "-b", help="Bot to talk to."),
    chat_id: str = typer.Option("console", "--chat-id", help="Conversation key for the store."),
    db_path: str | None = typer.Option(None, "--db", help="Session database path."),
    user_id: int | None = typer.Option(
        None, "--user-id", help="User ID checked against the bot's whitelist."
    ),
) -> None:
    """Chat with the agent from the terminal."""
    try:
        config = load_app_config(env_file, config_file)
        bot = config.get_bot(bot_name)
    except (ConfigError, FileNotFoundError) as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc
    if bot.whitelist and (user_id is None or not bot.is_user_allowed(user_id)):
        console.print(_markup(f"User {user_id} is not allowed to use bot {bot.name}", THEME.error))
        raise typer.Exit(1)
    configure_logging(config.log_level, config.log_format)

    async def _run() -> None:
        orchestrator, store = build_orchestrator(bot, db_path or config.db_path)
        progress = ProgressDescriber(
            ClaudeAgentEngine() if bot.progress_enabled else None,
            enabled=bot.progress_enabled,
            system_prompt=bot.progress_system_prompt,
            working_dir=bot.working_dir,
        )
        try:
            await ConsoleRelay(orchestrator, chat_id, progress).run()
        finally:
            store.close()

    try:
        asyncio.run(_run())
    except ChatRelayError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc
