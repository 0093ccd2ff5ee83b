from __future__ import annotations

import json
import logging

import pytest
from rich.logging import RichHandler

from chatrelay.errors import InvalidSettingError
from chatrelay.log import JsonFormatter, configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord("chatrelay.test", logging.INFO, __file__, 1, "hi %s", ("there",), None)
    record.chat_id = 42

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hi there"
    assert payload["level"] == "info"
    assert payload["logger"] == "chatrelay.test"
    assert payload["chat_id"] == 42
    assert "timestamp" in payload


def test_configure_logging_installs_one_handler() -> None:
    configure_logging("debug", "console")
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], RichHandler)
    assert root.level == logging.DEBUG

    configure_logging("warning", "json")
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert root.level == logging.WARNING


def test_configure_logging_rejects_unknown_format() -> None:
    with pytest.raises(InvalidSettingError):
        configure_logging("info", "xml")
