"""Command dispatcher: publish, await acknowledgment, retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from . import constants
from .core.journal import CommandJournal
from .core.models import (
    Command,
    CommandResult,
    CommandState,
    CommandStatus,
    CommandTransition,
    FailureReason,
)
from .core.policy import RetryPolicy, validate_transition
from .core.protocols import Clock, PubSubClient, SystemClock
from .feedback import AcknowledgmentListener, FeedbackWaiter
from .machine_commands import CommandVocabulary
from .session import DeviceChannels, SessionContext

LOGGER = logging.getLogger(__name__)

TransitionObserver = Callable[[CommandTransition], None]


class CommandDispatchError(RuntimeError):
    """Raised when a command cannot be dispatched at all."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        device_id: Optional[str] = None,
        command_name: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.device_id = device_id
        self.command_name = command_name


class CommandBusyError(CommandDispatchError):
    """Raised when the device already has an outstanding command."""

    def __init__(self, command_name: str, outstanding: Command) -> None:
        super().__init__(
            f"Device {outstanding.device_id} is busy with {outstanding.name!r}",
            code="busy",
            device_id=outstanding.device_id,
            command_name=command_name,
        )
        self.outstanding = outstanding


class InvalidCommandError(CommandDispatchError):
    """Raised for empty or (in strict mode) unknown command names."""


class UnknownDeviceError(CommandDispatchError):
    """Raised when the target device has no watched channel pair."""


@dataclass(slots=True)
class _ActiveCommand:
    command: Command
    channels: DeviceChannels
    waiter: FeedbackWaiter
    started_at: float
    state: CommandState = CommandState.IDLE
    task: Optional[asyncio.Task[CommandResult]] = None
    running: bool = False
    finished: bool = False
    cancel_reason: Optional[str] = None
    last_publish_ok: bool = True
    result: Optional[CommandResult] = None


class CommandDispatcher:
    """Sends named commands to machines and tracks them to completion.

    At most one command is outstanding per device. A second ``send`` for a
    busy device raises :class:`CommandBusyError` without touching the
    in-flight command.
    """

    def __init__(
        self,
        session: SessionContext,
        mqtt: PubSubClient,
        listener: AcknowledgmentListener,
        policy: Optional[RetryPolicy] = None,
        *,
        clock: Optional[Clock] = None,
        journal: Optional[CommandJournal] = None,
        vocabulary: Optional[CommandVocabulary] = None,
        qos: int = constants.COMMAND_QOS,
    ) -> None:
        self._session = session
        self._mqtt = mqtt
        self._listener = listener
        self._policy = policy or RetryPolicy()
        self._clock: Clock = clock or SystemClock()
        self._journal = journal
        self._vocabulary = vocabulary or CommandVocabulary()
        self._qos = qos
        self._active: Dict[str, _ActiveCommand] = {}
        self._observers: List[TransitionObserver] = []

    @property
    def session(self) -> SessionContext:
        return self._session

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def journal(self) -> Optional[CommandJournal]:
        return self._journal

    @property
    def vocabulary(self) -> CommandVocabulary:
        return self._vocabulary

    def add_observer(self, observer: TransitionObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: TransitionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def state(self, device_id: Optional[str] = None) -> CommandState:
        active = self._active.get(device_id or self._session.device_id)
        if active is None:
            return CommandState.IDLE
        return active.state

    def is_busy(self, device_id: Optional[str] = None) -> bool:
        return (device_id or self._session.device_id) in self._active

    def outstanding(self, device_id: Optional[str] = None) -> Optional[Command]:
        active = self._active.get(device_id or self._session.device_id)
        return active.command if active is not None else None

    async def send(
        self, command_name: str, device_id: Optional[str] = None
    ) -> CommandResult:
        """Publish ``command_name`` and wait for ``got`` then ``done``.

        Raises:
            InvalidCommandError: If the name is empty (or unknown in strict mode).
            UnknownDeviceError: If the device's channels are not being watched.
            CommandBusyError: If the device already has an outstanding command.
        """
        name = self._validate_name(command_name)
        channels = self._resolve_channels(device_id)

        current = self._active.get(channels.device_id)
        if current is not None:
            LOGGER.warning(
                "Rejecting %r for %s: %r still outstanding (state=%s, attempt=%d)",
                name,
                channels.device_id,
                current.command.name,
                current.state.value,
                current.command.attempt,
            )
            raise CommandBusyError(name, current.command)

        command = Command(
            name=name, device_id=channels.device_id, issued_at=self._clock.now()
        )
        active = _ActiveCommand(
            command=command,
            channels=channels,
            waiter=self._listener.expect(command),
            started_at=self._clock.monotonic(),
        )
        self._active[channels.device_id] = active
        task = asyncio.create_task(self._run(active))
        active.task = task

        try:
            return await task
        finally:
            if self._active.get(channels.device_id) is active:
                del self._active[channels.device_id]
            self._listener.release(command)

    def cancel(
        self, device_id: Optional[str] = None, reason: str = "cancelled"
    ) -> bool:
        """Stop waiting for the device's outstanding command.

        No further publishes happen; the pending ``send`` resolves with a
        ``cancelled`` result. Returns ``False`` when nothing was outstanding.
        """
        active = self._active.get(device_id or self._session.device_id)
        if active is None or active.finished:
            return False

        active.cancel_reason = reason
        LOGGER.info(
            "Cancelling command %s (%s) on %s: %s",
            active.command.short_id,
            active.command.name,
            active.command.device_id,
            reason,
        )
        if active.running and active.task is not None:
            active.task.cancel()
        return True

    async def abort_all(self, reason: str) -> int:
        """Cancel every outstanding command and wait for them to settle."""
        items = list(self._active.values())
        tasks = []
        for active in items:
            if self.cancel(active.command.device_id, reason) and active.task:
                tasks.append(active.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------
    async def _run(self, active: _ActiveCommand) -> CommandResult:
        active.running = True
        if active.cancel_reason is not None:
            return self._finish(active, CommandStatus.CANCELLED, FailureReason.CANCELLED)

        try:
            return await self._attempt_loop(active)
        except asyncio.CancelledError:
            result = self._finish(
                active, CommandStatus.CANCELLED, FailureReason.CANCELLED
            )
            if active.cancel_reason is None:
                raise
            return result

    async def _attempt_loop(self, active: _ActiveCommand) -> CommandResult:
        policy = self._policy
        command = active.command
        payload = command.name.encode("utf-8")
        attempt = 0

        while True:
            attempt += 1
            command.attempt = attempt
            self._transition(active, CommandState.SENT)
            active.last_publish_ok = self._publish(active, payload)

            if await active.waiter.wait_for_ack(policy.ack_timeout_seconds):
                break

            LOGGER.warning(
                "No acknowledgment for %s (%s) on %s, attempt %d/%d",
                command.short_id,
                command.name,
                active.channels.input_topic,
                attempt,
                policy.max_attempts,
            )
            if not policy.should_retry(attempt):
                reason = (
                    FailureReason.ACK_TIMEOUT
                    if active.last_publish_ok
                    else FailureReason.PUBLISH_FAILURE
                )
                return self._finish(active, CommandStatus.FAILED, reason)

            if policy.retry_delay_seconds > 0:
                await asyncio.sleep(policy.retry_delay_seconds)
                # A late ack during the delay means the machine has the command.
                if active.waiter.acknowledged:
                    break

        self._transition(active, CommandState.ACKNOWLEDGED)

        if await active.waiter.wait_for_completion(policy.completion_timeout_seconds):
            return self._finish(active, CommandStatus.COMPLETED)

        LOGGER.warning(
            "Command %s (%s) acknowledged but not completed within %.1fs",
            command.short_id,
            command.name,
            policy.completion_timeout_seconds,
        )
        return self._finish(
            active, CommandStatus.FAILED, FailureReason.COMPLETION_TIMEOUT
        )

    def _publish(self, active: _ActiveCommand, payload: bytes) -> bool:
        topic = active.channels.input_topic
        try:
            self._mqtt.publish(topic, payload, qos=self._qos, retain=False)
        except (RuntimeError, OSError) as exc:
            LOGGER.warning(
                "Publishing %s to %s failed (attempt %d): %s",
                active.command.name,
                topic,
                active.command.attempt,
                exc,
            )
            return False

        LOGGER.info(
            "Sent %s to %s (attempt %d/%d)",
            active.command.name,
            topic,
            active.command.attempt,
            self._policy.max_attempts,
        )
        return True

    def _finish(
        self,
        active: _ActiveCommand,
        status: CommandStatus,
        reason: Optional[FailureReason] = None,
    ) -> CommandResult:
        if active.result is not None:
            return active.result

        state = {
            CommandStatus.COMPLETED: CommandState.COMPLETED,
            CommandStatus.FAILED: CommandState.FAILED,
            CommandStatus.CANCELLED: CommandState.CANCELLED,
        }[status]

        self._transition(active, state, reason)
        active.finished = True

        result = CommandResult(
            status=status,
            command=active.command,
            attempts=active.command.attempt,
            reason=reason,
            elapsed_seconds=max(0.0, self._clock.monotonic() - active.started_at),
            finished_at=self._clock.now(),
        )
        active.result = result

        log = LOGGER.info if status == CommandStatus.COMPLETED else LOGGER.warning
        log(
            "Command %s (%s) on %s %s after %d attempt(s) in %.2fs%s",
            active.command.short_id,
            active.command.name,
            active.command.device_id,
            status.value,
            result.attempts,
            result.elapsed_seconds,
            f" ({reason.value})" if reason else "",
        )

        if self._journal is not None:
            self._journal.record(result)

        return result

    def _transition(
        self,
        active: _ActiveCommand,
        state: CommandState,
        reason: Optional[FailureReason] = None,
    ) -> None:
        previous = active.state
        validate_transition(previous, state)
        active.state = state

        transition = CommandTransition(
            command=active.command,
            previous=previous,
            state=state,
            attempt=active.command.attempt,
            reason=reason,
            at=self._clock.now(),
        )
        LOGGER.debug(
            "Command %s: %s -> %s (attempt %d)",
            active.command.short_id,
            previous.value,
            state.value,
            active.command.attempt,
        )

        for observer in list(self._observers):
            try:
                observer(transition)
            except Exception:
                LOGGER.exception("Command observer raised an exception")

    def _validate_name(self, command_name: str) -> str:
        name = (command_name or "").strip()
        if not name:
            raise InvalidCommandError(
                "Command name cannot be empty", code="invalid_command"
            )

        if not self._vocabulary.is_known(name):
            if self._vocabulary.strict:
                raise InvalidCommandError(
                    f"Unknown command {name!r}",
                    code="unknown_command",
                    command_name=name,
                )
            LOGGER.warning("Command %r is not in the machine vocabulary", name)

        return name

    def _resolve_channels(self, device_id: Optional[str]) -> DeviceChannels:
        target = (device_id or self._session.device_id).strip()
        channels = self._listener.channels_for(target)
        if channels is None:
            raise UnknownDeviceError(
                f"Device {target!r} has no connected feedback channel",
                code="unknown_device",
                device_id=target,
            )
        return channels
