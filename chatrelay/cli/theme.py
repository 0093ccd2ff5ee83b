"""Semantic colour tokens for console output."""

from dataclasses import dataclass


@dataclass(frozen=True)
class CliTheme:
    """Rich colour tokens used by the console transport."""

    primary: str = "#E6EDF3"
    muted: str = "#7F848E"
    accent: str = "#61AFEF"
    success: str = "#98C379"
    warning: str = "#E5C07B"
    error: str = "#E06C75"
    border: str = "#3E4451"
    prompt: str = "#56B6C2"
    progress: str = "#ABB2BF"
    thinking: str = "#C678DD"


THEME = CliTheme()
