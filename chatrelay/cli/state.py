"""Shared CLI state: console, apps, paths."""

from __future__ import annotations

import os
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.console import Console

from ..core.config import AppConfig, load_from_env, load_from_env_file

# Per-user data for the console transport
CONFIG_DIR = Path.home() / ".config" / "chatrelay"
HISTORY_FILE = CONFIG_DIR / "history"

# Longest single message a chat transport sends; longer replies are split.
MAX_MESSAGE_LENGTH = int(os.getenv("CHATRELAY_MAX_MESSAGE_LENGTH", "4096"))

console = Console()

app = typer.Typer(
    name="chatrelay",
    help="Relay chat conversations to a coding agent.",
    epilog=(
        "Examples:\n"
        "  chatrelay chat\n"
        "  chatrelay chat --env ./bots.env --bot reviewer\n"
        "  chatrelay sessions list\n"
        "  chatrelay sessions clear 12345"
    ),
    add_completion=False,
)

sessions_app = typer.Typer(help="Inspect and reset stored agent sessions.")
app.add_typer(sessions_app, name="sessions")


def load_app_config(env_file: Path | None = None, config_file: Path | None = None) -> AppConfig:
    """Resolve configuration from a YAML file, a ``.env`` file, or the environment."""
    if config_file is not None:
        return AppConfig.from_file(config_file)
    if env_file is not None:
        return load_from_env_file(env_file)
    load_dotenv()
    return load_from_env()
