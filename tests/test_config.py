from __future__ import annotations

import json
from pathlib import Path

import pytest

from chatrelay.core.config import (
    AppConfig,
    BotConfig,
    PermissionMode,
    load_from_env,
    load_from_env_file,
    load_mcp_servers,
    normalize_thinking_budget,
    parse_claude_args,
    parse_engine_args,
    parse_whitelist,
)
from chatrelay.errors import ConfigError, InvalidSettingError, MissingWorkingDirError

_ENV_KEYS = ("BOT_WORKING_DIR", "BOT_COUNT", "BOT_1_WORKING_DIR", "BOT_2_WORKING_DIR")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)


def test_permission_mode_parse_falls_back_to_default() -> None:
    assert PermissionMode.parse("acceptEdits") is PermissionMode.ACCEPT_EDITS
    assert PermissionMode.parse("bogus") is PermissionMode.DEFAULT
    assert PermissionMode.parse(None) is PermissionMode.DEFAULT
    assert PermissionMode.DEFAULT.requires_confirmation
    assert not PermissionMode.BYPASS_PERMISSIONS.requires_confirmation


def test_parse_whitelist() -> None:
    assert parse_whitelist("1, 2,,3") == [1, 2, 3]
    assert parse_whitelist("") == []
    with pytest.raises(ConfigError, match="abc"):
        parse_whitelist("1,abc")


def test_parse_claude_args_respects_quotes() -> None:
    assert parse_claude_args('--model opus,--append "two words"') == [
        "--model",
        "opus",
        "--append",
        "two words",
    ]
    assert parse_claude_args(None) == []


def test_parse_engine_args_extracts_known_overrides() -> None:
    overrides = parse_engine_args(
        ["--model", "opus", "--max-turns", "x", "--permission-mode", "plan", "--verbose"]
    )
    assert overrides == {"model": "opus", "permission_mode": "plan"}


def test_thinking_budget_is_raised_to_minimum() -> None:
    assert normalize_thinking_budget(0) == 0
    assert normalize_thinking_budget(10) == 1024
    assert normalize_thinking_budget(4096) == 4096


def test_bot_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOT_WORKING_DIR", str(tmp_path))
    monkeypatch.setenv("BOT_NAME", "helper")
    monkeypatch.setenv("BOT_PERMISSION_MODE", "acceptEdits")
    monkeypatch.setenv("BOT_MAX_TURNS", "7")
    monkeypatch.setenv("BOT_WHITELIST", "10,20")

    config = load_from_env()
    bot = config.get_bot()

    assert bot.name == "helper"
    assert bot.working_dir == str(tmp_path)
    assert bot.permission_mode is PermissionMode.ACCEPT_EDITS
    assert bot.max_turns == 7
    assert bot.whitelist == [10, 20]


def test_numbered_bots_are_auto_detected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOT_1_WORKING_DIR", str(tmp_path))
    monkeypatch.setenv("BOT_2_WORKING_DIR", str(tmp_path))
    monkeypatch.setenv("BOT_2_NAME", "second")

    config = load_from_env()

    assert [b.name for b in config.bots] == ["BOT_1", "second"]
    assert config.get_bot("second").name == "second"
    with pytest.raises(InvalidSettingError):
        config.get_bot("missing")


def test_missing_working_dir_raises() -> None:
    with pytest.raises(MissingWorkingDirError):
        load_from_env()


def test_working_dir_must_exist(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOT_WORKING_DIR", str(tmp_path / "nope"))
    with pytest.raises(ConfigError, match="does not exist"):
        load_from_env()


def test_invalid_integer_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOT_WORKING_DIR", str(tmp_path))
    monkeypatch.setenv("BOT_MAX_TURNS", "many")
    with pytest.raises(ConfigError, match="BOT_MAX_TURNS"):
        load_from_env()


def test_load_from_env_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / "bots.env"
    env_file.write_text(f"BOT_WORKING_DIR={tmp_path}\nBOT_MODEL=haiku\n", encoding="utf-8")
    # Registered with monkeypatch so the values loaded from the file are undone.
    monkeypatch.setenv("BOT_WORKING_DIR", "")
    monkeypatch.setenv("BOT_MODEL", "")

    config = load_from_env_file(env_file)

    assert config.get_bot().model == "haiku"


def test_permission_timeout_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        BotConfig(name="b", working_dir=str(tmp_path), permission_timeout=0)


def test_yaml_roundtrip_preserves_extras(tmp_path: Path) -> None:
    path = tmp_path / "bots.yaml"
    config = AppConfig(
        bots=[BotConfig(name="one", working_dir=str(tmp_path), claude_args=["--verbose"])],
        db_path=str(tmp_path / "s.db"),
        log_format="json",
        extras={"telegram": {"token_env": "TG_TOKEN"}},
    )
    config.to_file(path)

    loaded = AppConfig.from_file(path)

    assert loaded.db_path == config.db_path
    assert loaded.log_format == "json"
    assert loaded.extras == {"telegram": {"token_env": "TG_TOKEN"}}
    assert loaded.bots[0].name == "one"
    assert loaded.bots[0].claude_args == ["--verbose"]


def test_invalid_log_format_rejected() -> None:
    with pytest.raises(InvalidSettingError):
        AppConfig(log_format="xml")


def test_load_mcp_servers(tmp_path: Path) -> None:
    good = tmp_path / "good.json"
    good.write_text(json.dumps({"mcpServers": {"a": {"command": "x"}}}), encoding="utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")

    assert load_mcp_servers(good) == {"a": {"command": "x"}}
    assert load_mcp_servers(bad) is None
    assert load_mcp_servers(tmp_path / "missing.json") is None


def test_whitelist_admits_everyone_when_empty(tmp_path: Path) -> None:
    open_bot = BotConfig(name="a", working_dir=str(tmp_path))
    closed_bot = BotConfig(name="b", working_dir=str(tmp_path), whitelist=[7])

    assert open_bot.is_user_allowed(123)
    assert closed_bot.is_user_allowed(7)
    assert not closed_bot.is_user_allowed(8)
