"""Bot lifecycle exceptions."""

from __future__ import annotations


class BotError(Exception):
    """Base class for bot lifecycle errors."""


class BotStateError(BotError):
    """Requested transition is not allowed from the current state."""


class BotAlreadyRunningError(BotStateError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"Bot is already running for user {user_id}")
        self.user_id = user_id


class BotStartupError(BotError):
    """start() failed; the instance is left in ERROR."""


class BotConfigError(BotError):
    """User, config, wallet or subscription does not allow the bot to run."""


class BotLimitError(BotError):
    """The process-wide concurrent bot ceiling is reached."""
