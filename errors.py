"""Domain exceptions raised by the scheduling engine.

Races (a prompt already claimed, a lock already held) are not errors and
never surface here; callers get a falsy return value instead.
"""

from __future__ import annotations


class ArenaError(Exception):
    """Base class for every error raised on purpose by this package."""


class ConfigurationError(ArenaError):
    """A collaborator required by the operation is not configured."""


class PromptGenerationError(ArenaError):
    """The generation collaborator produced no prompts while the pool is short."""


class NotFoundError(ArenaError):
    """A referenced prompt, triad, room, user or persona does not exist."""


class PromptNotActive(ArenaError):
    """The prompt is closed or its deadline has passed."""


class AlreadyResponded(ArenaError):
    """The user already has a response for this prompt."""


class EmptyContent(ArenaError):
    """Submitted text is empty or too short."""


class InsufficientTokens(ArenaError):
    """The user's ledger balance does not cover the requested spend."""

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(f"Not enough tokens (balance {balance}, need {required})")
        self.balance = balance
        self.required = required


class MessageRejected(ArenaError):
    """A chat message was refused before persistence."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TimeWindowClosed(MessageRejected):
    """The triad's time window has elapsed."""

    def __init__(self, reason: str = "Debate time is over") -> None:
        super().__init__(reason)
