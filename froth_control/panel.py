"""Control panel capability shared by the admin and staff service screens."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .core.models import CommandResult
from .dispatcher import CommandBusyError, CommandDispatcher, CommandDispatchError
from .machine_commands import LATCHES, latch_command
from .notifications import ToastNotifier

LOGGER = logging.getLogger(__name__)


class ControlPanel:
    """Thin consumer of the dispatcher for one machine.

    Controls are disabled while a command is outstanding; a press during that
    window is rejected with a busy toast instead of being queued.
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        *,
        device_id: Optional[str] = None,
        notifier: Optional[ToastNotifier] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._device_id = device_id or dispatcher.session.device_id
        self._notifier = notifier
        self._latches: Dict[str, bool] = {latch: False for latch in LATCHES}

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def processing(self) -> Optional[str]:
        command = self._dispatcher.outstanding(self._device_id)
        return command.name if command is not None else None

    def is_enabled(self) -> bool:
        return not self._dispatcher.is_busy(self._device_id)

    @property
    def latches(self) -> Dict[str, bool]:
        return dict(self._latches)

    async def press(self, command_name: str) -> Optional[CommandResult]:
        """Send ``command_name``; ``None`` when the press was rejected."""
        try:
            return await self._dispatcher.send(command_name, self._device_id)
        except CommandBusyError as exc:
            if self._notifier is not None:
                self._notifier.busy(command_name, exc.outstanding.name)
            return None
        except CommandDispatchError as exc:
            LOGGER.warning("Rejected %r on %s: %s", command_name, self._device_id, exc)
            if self._notifier is not None:
                self._notifier.error(str(exc))
            return None

    async def toggle_latch(self, latch: str, engaged: bool) -> Optional[CommandResult]:
        """Switch a latch; its recorded position changes only on completion."""
        command_name = latch_command(latch, engaged)
        result = await self.press(command_name)
        if result is not None and result.ok:
            self._latches[latch.strip().lower()] = engaged
        return result

    def cancel(self, reason: str = "panel closed") -> bool:
        return self._dispatcher.cancel(self._device_id, reason)
