"""Admin commands over the session store."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from ..errors import ChatRelayError, ConfigError
from ..storage.session_store import SqliteSessionStore
from .formatting import _markup
from .state import console, load_app_config, sessions_app
from .theme import THEME


def _open_store(
    env_file: Path | None, config_file: Path | None, bot_name: str | None, db_path: str | None
) -> tuple[SqliteSessionStore, str]:
    try:
        config = load_app_config(env_file, config_file)
        bot = config.get_bot(bot_name)
    except (ConfigError, FileNotFoundError) as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc
    return SqliteSessionStore(db_path or config.db_path), bot.name


EnvOption = typer.Option(None, "--env", help="Load settings from this .env file.")
ConfigOption = typer.Option(None, "--config", "-c", help="Load settings from a YAML file.")
BotOption = typer.Option(None, "--bot", "-b", help="Bot whose sessions to use.")
DbOption = typer.Option(None, "--db", help="Session database path.")


@sessions_app.command("list")
def list_sessions(
    env_file: Path | None = EnvOption,
    config_file: Path | None = ConfigOption,
    bot_name: str | None = BotOption,
    db_path: str | None = DbOption,
) -> None:
    """List chats with a stored session, newest first."""
    store, bot = _open_store(env_file, config_file, bot_name, db_path)
    try:
        records = store.load_all(bot)
    except ChatRelayError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc
    finally:
        store.close()

    if not records:
        console.print(_markup(f"No sessions for bot {bot}", THEME.muted))
        return

    table = Table(border_style=THEME.border)
    table.add_column("Chat", style=THEME.accent)
    table.add_column("Session")
    table.add_column("Updated", style=THEME.muted)
    for record in records:
        table.add_row(
            record.chat_id,
            record.session_id,
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@sessions_app.command("clear")
def clear_session(
    chat_id: str = typer.Argument(..., help="Chat whose session token to clear."),
    env_file: Path | None = EnvOption,
    config_file: Path | None = ConfigOption,
    bot_name: str | None = BotOption,
    db_path: str | None = DbOption,
) -> None:
    """Forget a chat's session token but keep its record."""
    store, bot = _open_store(env_file, config_file, bot_name, db_path)
    try:
        store.clear_token(chat_id, bot)
    finally:
        store.close()
    console.print(_markup(f"Session cleared for chat {chat_id}", THEME.success))


@sessions_app.command("delete")
def delete_session(
    chat_id: str = typer.Argument(..., help="Chat whose record to delete."),
    env_file: Path | None = EnvOption,
    config_file: Path | None = ConfigOption,
    bot_name: str | None = BotOption,
    db_path: str | None = DbOption,
) -> None:
    """Remove a chat's session record entirely."""
    store, bot = _open_store(env_file, config_file, bot_name, db_path)
    try:
        store.delete(chat_id, bot)
    finally:
        store.close()
    console.print(_markup(f"Session deleted for chat {chat_id}", THEME.success))
