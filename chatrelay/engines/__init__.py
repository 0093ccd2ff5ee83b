"""Agent engine backends."""

from .claude import ClaudeAgentEngine

__all__ = ["ClaudeAgentEngine"]
