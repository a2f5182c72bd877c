"""Value types shared by the dispatcher, listener and notifiers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .. import constants


class CommandState(str, Enum):
    """Lifecycle of a single command on one device."""

    IDLE = "idle"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_outstanding(self) -> bool:
        return self in (CommandState.SENT, CommandState.ACKNOWLEDGED)


TERMINAL_STATES = frozenset(
    {CommandState.COMPLETED, CommandState.FAILED, CommandState.CANCELLED}
)


class CommandStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    PUBLISH_FAILURE = "publish_failure"
    ACK_TIMEOUT = "ack_timeout"
    COMPLETION_TIMEOUT = "completion_timeout"
    CANCELLED = "cancelled"


class FeedbackKind(str, Enum):
    ACK = "ack"
    COMPLETION = "completion"
    UNKNOWN = "unknown"


def classify_feedback(raw: str) -> FeedbackKind:
    """Map a raw feedback payload onto the ``got``/``done`` convention."""

    token = raw.strip().lower()
    if token == constants.ACK_TOKEN:
        return FeedbackKind.ACK
    if token == constants.COMPLETION_TOKEN:
        return FeedbackKind.COMPLETION
    return FeedbackKind.UNKNOWN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_command_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(slots=True)
class FeedbackMessage:
    raw: str
    topic: str
    received_at: datetime = field(default_factory=_utcnow)

    @property
    def kind(self) -> FeedbackKind:
        return classify_feedback(self.raw)

    @property
    def device_id(self) -> str:
        return self.topic.rsplit("/", 1)[0]


@dataclass(slots=True)
class Command:
    """A control instruction for one device.

    ``command_id`` never leaves the process; the wire payload is the bare name.
    """

    name: str
    device_id: str
    issued_at: datetime = field(default_factory=_utcnow)
    attempt: int = 0
    command_id: str = field(default_factory=_new_command_id)

    @property
    def short_id(self) -> str:
        return self.command_id[:8]


@dataclass(slots=True)
class CommandResult:
    status: CommandStatus
    command: Command
    attempts: int
    reason: Optional[FailureReason] = None
    elapsed_seconds: float = 0.0
    finished_at: datetime = field(default_factory=_utcnow)

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        if self.status == CommandStatus.COMPLETED:
            return {"status": self.status.value}
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.reason is not None:
            payload["reason"] = self.reason.value
        return payload

    def as_record(self) -> Dict[str, Any]:
        record = self.as_dict()
        record.update(
            {
                "commandId": self.command.command_id,
                "command": self.command.name,
                "deviceId": self.command.device_id,
                "attempts": self.attempts,
                "issuedAt": self.command.issued_at.isoformat(timespec="seconds"),
                "finishedAt": self.finished_at.isoformat(timespec="seconds"),
                "elapsedSeconds": round(self.elapsed_seconds, 3),
            }
        )
        return record


@dataclass(slots=True)
class CommandTransition:
    command: Command
    previous: CommandState
    state: CommandState
    attempt: int
    reason: Optional[FailureReason] = None
    at: datetime = field(default_factory=_utcnow)
