"""Bot and application configuration: environment variables or a YAML file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from ..errors import ConfigError, InvalidSettingError, MissingWorkingDirError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sonnet"
DEFAULT_MAX_TURNS = 50
DEFAULT_PERMISSION_TIMEOUT = 60
MIN_THINKING_BUDGET = 1024
MCP_CONFIG_FILENAME = ".mcp.json"
MAX_NUMBERED_BOTS = 100


class PermissionMode(str, Enum):
    """How the engine treats tool calls."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"

    @property
    def requires_confirmation(self) -> bool:
        """True when tool calls must pass through the permission broker."""
        return self in (PermissionMode.DEFAULT, PermissionMode.ACCEPT_EDITS)

    @classmethod
    def parse(cls, value: str | PermissionMode | None) -> PermissionMode:
        """Parse a mode; unknown or empty values fall back to ``default``."""
        if isinstance(value, PermissionMode):
            return value
        for mode in cls:
            if mode.value == (value or "").strip():
                return mode
        return cls.DEFAULT


def parse_whitelist(value: str | None) -> list[int]:
    """Parse a comma-separated list of user ids."""
    if not value or not value.strip():
        return []
    ids: list[int] = []
    for raw in value.split(","):
        raw = raw.strip()
        if not raw:
            continue
        try:
            ids.append(int(raw))
        except ValueError:
            raise ConfigError(f"Invalid user ID in whitelist: {raw}") from None
    return ids


def parse_claude_args(value: str | None) -> list[str]:
    """Split engine arguments on spaces or commas, honouring quotes."""
    if not value or not value.strip():
        return []
    args: list[str] = []
    current = ""
    quote = ""
    for char in value:
        if char in ("'", '"') and not quote:
            quote = char
        elif quote and char == quote:
            quote = ""
        elif char in (" ", ",") and not quote:
            if current.strip():
                args.append(current.strip())
            current = ""
        else:
            current += char
    if current.strip():
        args.append(current.strip())
    return args


def parse_engine_args(args: list[str] | tuple[str, ...]) -> dict[str, Any]:
    """Extract ``--model``, ``--max-turns`` and ``--permission-mode`` overrides."""
    overrides: dict[str, Any] = {}
    i = 0
    while i < len(args):
        arg = args[i]
        has_value = i + 1 < len(args)
        if arg == "--model" and has_value:
            overrides["model"] = args[i + 1]
            i += 1
        elif arg == "--max-turns" and has_value:
            try:
                overrides["max_turns"] = int(args[i + 1])
            except ValueError:
                logger.warning("Ignoring non-integer --max-turns %r", args[i + 1])
            i += 1
        elif arg == "--permission-mode" and has_value:
            mode = args[i + 1]
            if mode in {m.value for m in PermissionMode}:
                overrides["permission_mode"] = mode
            i += 1
        i += 1
    return overrides


def normalize_thinking_budget(value: int) -> int:
    """0 disables extended thinking; enabled budgets are at least 1024 tokens."""
    if value <= 0:
        return 0
    return max(MIN_THINKING_BUDGET, value)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from None


def _validate_directory(path: str, name: str) -> None:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"{name} does not exist: {path}")
    if not p.is_dir():
        raise ConfigError(f"{name} is not a directory: {path}")


@dataclass
class BotConfig:
    """Settings for one bot: where the agent works and how it runs."""

    name: str
    working_dir: str
    model: str = DEFAULT_MODEL
    max_turns: int = DEFAULT_MAX_TURNS
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    permission_timeout: int = DEFAULT_PERMISSION_TIMEOUT
    system_prompt_file: str | None = None
    mcp_config_file: str | None = None
    thinking_budget: int = 0
    claude_args: list[str] = field(default_factory=list)
    progress_enabled: bool = True
    progress_system_prompt: str | None = None
    whitelist: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.permission_mode = PermissionMode.parse(self.permission_mode)
        self.thinking_budget = normalize_thinking_budget(int(self.thinking_budget))
        if self.permission_timeout <= 0:
            raise ConfigError(
                f"permission_timeout must be positive, got {self.permission_timeout}"
            )
        if self.mcp_config_file is None:
            candidate = Path(self.working_dir) / MCP_CONFIG_FILENAME
            if candidate.is_file():
                self.mcp_config_file = str(candidate)

    def is_user_allowed(self, user_id: int) -> bool:
        """An empty whitelist admits everyone."""
        return not self.whitelist or user_id in self.whitelist

    @classmethod
    def from_env(cls, prefix: str = "BOT") -> BotConfig | None:
        """Load ``<prefix>_*`` variables; None if ``<prefix>_WORKING_DIR`` is unset."""
        working_dir = os.getenv(f"{prefix}_WORKING_DIR")
        if not working_dir:
            return None
        _validate_directory(working_dir, f"{prefix}_WORKING_DIR")

        system_prompt_file = os.getenv(f"{prefix}_SYSTEM_PROMPT_FILE") or None
        if system_prompt_file and not Path(system_prompt_file).exists():
            raise ConfigError(f"System prompt file not found: {system_prompt_file}")

        mcp_config_file = os.getenv(f"{prefix}_MCP_CONFIG_FILE") or None
        if mcp_config_file and not Path(mcp_config_file).exists():
            raise ConfigError(f"MCP config file not found: {mcp_config_file}")

        return cls(
            name=os.getenv(f"{prefix}_NAME") or prefix,
            working_dir=working_dir,
            model=os.getenv(f"{prefix}_MODEL") or DEFAULT_MODEL,
            max_turns=_int_env(f"{prefix}_MAX_TURNS", DEFAULT_MAX_TURNS),
            permission_mode=PermissionMode.parse(os.getenv(f"{prefix}_PERMISSION_MODE")),
            permission_timeout=_int_env(f"{prefix}_PERMISSION_TIMEOUT", DEFAULT_PERMISSION_TIMEOUT),
            system_prompt_file=system_prompt_file,
            mcp_config_file=mcp_config_file,
            thinking_budget=_int_env(f"{prefix}_THINKING_BUDGET", 0),
            claude_args=parse_claude_args(os.getenv(f"{prefix}_CLAUDE_ARGS")),
            progress_enabled=os.getenv(f"{prefix}_PROGRESS_ENABLED", "true").lower() != "false",
            progress_system_prompt=os.getenv(f"{prefix}_PROGRESS_SYSTEM_PROMPT") or None,
            whitelist=parse_whitelist(os.getenv(f"{prefix}_WHITELIST")),
        )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> BotConfig:
        if not data.get("working_dir"):
            raise ConfigError("Each bot needs a working_dir")
        known = {k: v for k, v in data.items() if k in _BOT_FIELDS}
        known.setdefault("name", "BOT")
        return cls(**known)

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "working_dir": self.working_dir,
            "model": self.model,
            "max_turns": self.max_turns,
            "permission_mode": self.permission_mode.value,
            "permission_timeout": self.permission_timeout,
        }
        if self.system_prompt_file:
            data["system_prompt_file"] = self.system_prompt_file
        if self.mcp_config_file:
            data["mcp_config_file"] = self.mcp_config_file
        if self.thinking_budget:
            data["thinking_budget"] = self.thinking_budget
        if self.claude_args:
            data["claude_args"] = list(self.claude_args)
        data["progress_enabled"] = self.progress_enabled
        if self.progress_system_prompt:
            data["progress_system_prompt"] = self.progress_system_prompt
        if self.whitelist:
            data["whitelist"] = list(self.whitelist)
        return data


_BOT_FIELDS = frozenset(BotConfig.__dataclass_fields__)


@dataclass
class AppConfig:
    """Process-wide configuration: bots plus storage and logging settings.

    Usage::

        config = load_from_env()                  # BOT_* / BOT_<n>_* variables
        config = AppConfig.from_file("bots.yaml") # YAML mapping
    """

    bots: list[BotConfig] = field(default_factory=list)
    db_path: str = field(default_factory=lambda: os.getenv("DB_PATH", "sessions.db"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "info"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "console"))
    extras: dict[str, Any] = field(default_factory=dict)

    _KNOWN_FIELDS = frozenset({"bots", "db_path", "log_level", "log_format"})

    def __post_init__(self) -> None:
        if self.log_format not in ("console", "json"):
            raise InvalidSettingError("log_format", self.log_format, "console, json")

    def get_bot(self, name: str | None = None) -> BotConfig:
        """Return the bot called ``name``, or the first bot when ``name`` is None."""
        if not self.bots:
            raise MissingWorkingDirError()
        if name is None:
            return self.bots[0]
        for bot in self.bots:
            if bot.name == name:
                return bot
        raise InvalidSettingError("bot", name, ", ".join(b.name for b in self.bots))

    @classmethod
    def from_file(cls, path: str | Path) -> AppConfig:
        """Load config from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a YAML mapping: {path}")
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Build an AppConfig from a plain dict, preserving unknown keys in extras."""
        known: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        for key, value in data.items():
            if key in cls._KNOWN_FIELDS:
                known[key] = value
            else:
                extras[key] = value
        known["bots"] = [BotConfig._from_dict(dict(b)) for b in known.get("bots") or []]
        known["extras"] = extras
        return cls(**known)

    def to_file(self, path: str | Path) -> None:
        """Save config to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {
            "db_path": self.db_path,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "bots": [bot._to_dict() for bot in self.bots],
        }
        data.update(self.extras)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _detect_bot_count() -> int:
    explicit = os.getenv("BOT_COUNT")
    if explicit:
        try:
            count = int(explicit)
        except ValueError:
            count = 0
        if count > 0:
            return count
    count = 0
    for i in range(1, MAX_NUMBERED_BOTS + 1):
        if not os.getenv(f"BOT_{i}_WORKING_DIR"):
            break
        count = i
    return count


def load_from_env() -> AppConfig:
    """Load configuration from environment variables.

    A single bot uses ``BOT_*``; several bots use ``BOT_1_*``, ``BOT_2_*``...
    with ``BOT_COUNT`` or auto-detection.
    """
    single = BotConfig.from_env("BOT")
    if single is not None:
        return AppConfig(bots=[single])

    count = _detect_bot_count()
    if count == 0:
        raise MissingWorkingDirError()

    bots: list[BotConfig] = []
    for i in range(1, count + 1):
        bot = BotConfig.from_env(f"BOT_{i}")
        if bot is None:
            raise ConfigError(
                f"Bot {i} configuration incomplete. Please set BOT_{i}_WORKING_DIR."
            )
        bots.append(bot)
    return AppConfig(bots=bots)


def load_from_env_file(env_path: str | Path) -> AppConfig:
    """Load a ``.env`` file into the environment, then read configuration."""
    env_path = Path(env_path)
    if not env_path.exists():
        raise ConfigError(f".env file not found: {env_path}")
    load_dotenv(env_path, override=True)
    return load_from_env()


def load_mcp_servers(path: str | Path) -> dict[str, Any] | None:
    """Read the ``mcpServers`` mapping from an MCP JSON file.

    Unreadable or malformed files are logged and ignored.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load MCP config %s: %s", path, exc)
        return None
    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        logger.warning("MCP config %s has no mcpServers mapping", path)
        return None
    logger.info("Loaded %d MCP server(s) from %s", len(servers), path)
    return servers


def load_system_prompt(path: str | Path) -> str:
    """Read a system prompt file."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read system prompt file {path}: {exc}") from exc
