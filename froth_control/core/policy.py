"""Retry/timeout policy and the command state machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet

from .models import CommandState

if TYPE_CHECKING:
    from ..config import CommandConfig


class InvalidTransitionError(RuntimeError):
    """Raised when a command would move between unrelated states."""

    def __init__(self, previous: CommandState, state: CommandState) -> None:
        super().__init__(
            f"Illegal command transition {previous.value} -> {state.value}"
        )
        self.previous = previous
        self.state = state


# SENT -> SENT is a retry with attempt + 1.
ALLOWED_TRANSITIONS: Dict[CommandState, FrozenSet[CommandState]] = {
    CommandState.IDLE: frozenset({CommandState.SENT, CommandState.CANCELLED}),
    CommandState.SENT: frozenset(
        {
            CommandState.SENT,
            CommandState.ACKNOWLEDGED,
            CommandState.FAILED,
            CommandState.CANCELLED,
        }
    ),
    CommandState.ACKNOWLEDGED: frozenset(
        {CommandState.COMPLETED, CommandState.FAILED, CommandState.CANCELLED}
    ),
    CommandState.COMPLETED: frozenset(),
    CommandState.FAILED: frozenset(),
    CommandState.CANCELLED: frozenset(),
}


def validate_transition(previous: CommandState, state: CommandState) -> None:
    if state not in ALLOWED_TRANSITIONS[previous]:
        raise InvalidTransitionError(previous, state)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry with fixed timeouts.

    ``max_attempts`` counts the first publish. ``retry_delay_seconds`` is
    slept between an expired ack window and the next publish.
    """

    max_attempts: int = 3
    ack_timeout_seconds: float = 3.0
    completion_timeout_seconds: float = 2.0
    retry_delay_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.ack_timeout_seconds <= 0:
            raise ValueError("ack_timeout_seconds must be positive")
        if self.completion_timeout_seconds <= 0:
            raise ValueError("completion_timeout_seconds must be positive")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds cannot be negative")

    @classmethod
    def from_config(cls, config: "CommandConfig") -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            ack_timeout_seconds=config.ack_timeout_seconds,
            completion_timeout_seconds=config.completion_timeout_seconds,
            retry_delay_seconds=config.retry_delay_seconds,
        )

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    @property
    def total_ack_budget(self) -> float:
        return (
            self.max_attempts * self.ack_timeout_seconds
            + (self.max_attempts - 1) * self.retry_delay_seconds
        )
