"""Core primitives for froth-control."""

from .journal import CommandJournal
from .models import (
    Command,
    CommandResult,
    CommandState,
    CommandStatus,
    CommandTransition,
    FailureReason,
    FeedbackKind,
    FeedbackMessage,
    classify_feedback,
)
from .policy import InvalidTransitionError, RetryPolicy, validate_transition
from .protocols import Clock, MessageHandler, PubSubClient, SystemClock

__all__ = [
    "Clock",
    "Command",
    "CommandJournal",
    "CommandResult",
    "CommandState",
    "CommandStatus",
    "CommandTransition",
    "FailureReason",
    "FeedbackKind",
    "FeedbackMessage",
    "InvalidTransitionError",
    "MessageHandler",
    "PubSubClient",
    "RetryPolicy",
    "SystemClock",
    "classify_feedback",
    "validate_transition",
]
