"""Error types raised across chatrelay."""

from __future__ import annotations


class ChatRelayError(Exception):
    """Base class for chatrelay errors."""


class ChannelClosedError(ChatRelayError):
    """Raised when pushing into a streaming channel that was already closed."""

    def __init__(self) -> None:
        super().__init__("Cannot push to closed stream")


class ChannelConsumedError(ChatRelayError):
    """Raised when a streaming channel is iterated a second time."""

    def __init__(self) -> None:
        super().__init__("Streaming channel can only be consumed once")


class EngineInvocationError(ChatRelayError):
    """Raised when the agent engine fails during a turn.

    The orchestrator raises this only after the chat has been returned to
    idle, so the next message always starts a clean invocation.
    """

    def __init__(self, message: str, *, chat_id: str | int | None = None) -> None:
        super().__init__(message)
        self.chat_id = chat_id


class ConversationBusyError(ChatRelayError):
    """Raised when a single-prompt query is issued while a turn is running."""

    def __init__(self, chat_id: str | int) -> None:
        super().__init__(f"Chat {chat_id} already has an active invocation")
        self.chat_id = chat_id


class SessionStoreError(ChatRelayError):
    """Raised when the session store cannot read or write a record."""


class ConfigError(ValueError):
    """Base class for user-facing configuration errors."""


class MissingWorkingDirError(ConfigError):
    """Raised when no bot has a working directory configured."""

    def __init__(self) -> None:
        super().__init__(
            "No bot configuration found. Set BOT_WORKING_DIR, or BOT_1_WORKING_DIR "
            "(and BOT_2_..., etc.) for multiple bots."
        )


class InvalidSettingError(ConfigError):
    """Raised when a configuration value is invalid."""

    def __init__(self, option: str, value: str, allowed: str) -> None:
        super().__init__(f"Invalid {option} '{value}'. Allowed values: {allowed}.")
