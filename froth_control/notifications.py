"""Toast notifications derived from command transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .core.models import CommandState, CommandTransition, FailureReason
from .session import SessionContext

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Toast:
    title: str
    description: str
    variant: str = "default"

    @property
    def destructive(self) -> bool:
        return self.variant == "destructive"


ToastSink = Callable[[Toast], None]


def log_sink(toast: Toast) -> None:
    level = logging.WARNING if toast.destructive else logging.INFO
    LOGGER.log(level, "%s: %s", toast.title, toast.description)


_FAILURE_TEXT = {
    FailureReason.ACK_TIMEOUT: "failed after {attempts} retries",
    FailureReason.PUBLISH_FAILURE: "could not be sent after {attempts} retries",
    FailureReason.COMPLETION_TIMEOUT: "was acknowledged but never completed",
}


class ToastNotifier:
    """Dispatcher observer turning state changes into user-facing toasts."""

    def __init__(
        self,
        sink: Optional[ToastSink] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> None:
        self._sink = sink or log_sink
        self._session = session

    def __call__(self, transition: CommandTransition) -> None:
        toast = self.toast_for(transition)
        if toast is not None:
            self._sink(toast)

    def toast_for(self, transition: CommandTransition) -> Optional[Toast]:
        command = transition.command
        where = self._describe(command.device_id)
        state = transition.state

        if state == CommandState.SENT:
            if transition.previous != CommandState.IDLE:
                return None
            return Toast("Processing", f"Sending command to {where}: {command.name}")

        if state == CommandState.ACKNOWLEDGED:
            return Toast("Success", f"Command {command.name} acknowledged by {where}")

        if state == CommandState.COMPLETED:
            return Toast("Completed", f"Command {command.name} completed on {where}")

        if state == CommandState.FAILED:
            template = _FAILURE_TEXT.get(
                transition.reason or FailureReason.ACK_TIMEOUT,
                "failed",
            )
            return Toast(
                "Failed",
                f"Command {command.name} "
                + template.format(attempts=transition.attempt),
                variant="destructive",
            )

        if state == CommandState.CANCELLED:
            return Toast("Cancelled", f"Command {command.name} on {where} was cancelled")

        return None

    def busy(self, command_name: str, outstanding: str) -> None:
        self._sink(
            Toast(
                "Error",
                f"Cannot send {command_name}: {outstanding} is still processing",
                variant="destructive",
            )
        )

    def error(self, description: str) -> None:
        self._sink(Toast("Error", description, variant="destructive"))

    def _describe(self, device_id: str) -> str:
        session = self._session
        if session is not None and session.device_id == device_id:
            return session.display_name
        return device_id
