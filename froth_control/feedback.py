"""Acknowledgment listener for machine feedback topics."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from . import constants
from .core.models import Command, FeedbackKind, FeedbackMessage
from .core.protocols import PubSubClient
from .session import DeviceChannels

LOGGER = logging.getLogger(__name__)

FeedbackObserver = Callable[[FeedbackMessage], None]


class FeedbackWaiter:
    """Feedback signals for the outstanding command of one device.

    The machine sends no correlation id, so every ``got``/``done`` seen on the
    device's feedback topic while the waiter is armed belongs to its command.
    """

    def __init__(self, command: Command) -> None:
        self.command = command
        self.ack_count = 0
        self._acknowledged = asyncio.Event()
        self._completed = asyncio.Event()

    @property
    def acknowledged(self) -> bool:
        return self._acknowledged.is_set()

    @property
    def completed(self) -> bool:
        return self._completed.is_set()

    def signal(self, kind: FeedbackKind) -> bool:
        """Apply a feedback signal; returns ``True`` when it changed anything."""
        if kind == FeedbackKind.ACK:
            self.ack_count += 1
            if self._acknowledged.is_set():
                return False
            self._acknowledged.set()
            return True

        if kind == FeedbackKind.COMPLETION:
            if self._completed.is_set():
                return False
            # A completion implies the machine received the command.
            self._acknowledged.set()
            self._completed.set()
            return True

        return False

    async def wait_for_ack(self, timeout: float) -> bool:
        return await self._wait(self._acknowledged, timeout)

    async def wait_for_completion(self, timeout: float) -> bool:
        return await self._wait(self._completed, timeout)

    @staticmethod
    async def _wait(event: asyncio.Event, timeout: float) -> bool:
        if event.is_set():
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class AcknowledgmentListener:
    """Routes messages from ``{deviceId}/feedback`` to armed waiters."""

    def __init__(self, mqtt: PubSubClient, *, qos: int = constants.COMMAND_QOS) -> None:
        self._mqtt = mqtt
        self._qos = qos
        self._channels: Dict[str, DeviceChannels] = {}
        self._by_topic: Dict[str, str] = {}
        self._waiters: Dict[str, FeedbackWaiter] = {}
        self._observers: List[FeedbackObserver] = []
        self._started = False

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("AcknowledgmentListener already started")

        self._mqtt.set_message_handler(self.handle_message)
        self._started = True
        for channels in self._channels.values():
            self._mqtt.subscribe(channels.feedback_topic, qos=self._qos)

    async def stop(self) -> None:
        if not self._started:
            return

        try:
            for channels in list(self._channels.values()):
                try:
                    self._mqtt.unsubscribe(channels.feedback_topic)
                except RuntimeError as exc:
                    LOGGER.debug(
                        "Unsubscribe from %s failed: %s", channels.feedback_topic, exc
                    )
        finally:
            self._mqtt.set_message_handler(None)
            self._waiters.clear()
            self._started = False

    def resubscribe(self) -> None:
        """Reapply feedback subscriptions after the broker connection returns."""
        if not self._started:
            return
        for channels in self._channels.values():
            self._mqtt.subscribe(channels.feedback_topic, qos=self._qos)

    @property
    def started(self) -> bool:
        return self._started

    def watch(self, channels: DeviceChannels) -> None:
        """Subscribe to the device's feedback topic once per session."""
        if channels.device_id in self._channels:
            return

        self._channels[channels.device_id] = channels
        self._by_topic[channels.feedback_topic] = channels.device_id
        if self._started:
            self._mqtt.subscribe(channels.feedback_topic, qos=self._qos)
        LOGGER.info("Listening for feedback on %s", channels.feedback_topic)

    def unwatch(self, device_id: str) -> None:
        channels = self._channels.pop(device_id, None)
        if channels is None:
            return
        self._by_topic.pop(channels.feedback_topic, None)
        self._waiters.pop(device_id, None)
        if self._started:
            self._mqtt.unsubscribe(channels.feedback_topic)

    def is_watching(self, device_id: str) -> bool:
        return device_id in self._channels

    def channels_for(self, device_id: str) -> Optional[DeviceChannels]:
        return self._channels.get(device_id)

    @property
    def devices(self) -> List[str]:
        return list(self._channels)

    def expect(self, command: Command) -> FeedbackWaiter:
        """Arm a waiter for ``command``; one armed waiter per device."""
        if command.device_id not in self._channels:
            raise RuntimeError(f"Device {command.device_id} is not being watched")
        existing = self._waiters.get(command.device_id)
        if existing is not None:
            raise RuntimeError(
                f"Device {command.device_id} already awaits feedback for "
                f"{existing.command.name!r}"
            )
        waiter = FeedbackWaiter(command)
        self._waiters[command.device_id] = waiter
        return waiter

    def release(self, command: Command) -> None:
        waiter = self._waiters.get(command.device_id)
        if waiter is not None and waiter.command is command:
            del self._waiters[command.device_id]

    def add_observer(self, observer: FeedbackObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: FeedbackObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def handle_message(self, topic: str, payload: bytes) -> None:
        device_id = self._by_topic.get(topic)
        if device_id is None:
            return

        message = FeedbackMessage(
            raw=payload.decode("utf-8", errors="replace"), topic=topic
        )
        kind = message.kind

        for observer in list(self._observers):
            try:
                observer(message)
            except Exception:
                LOGGER.exception("Feedback observer raised an exception")

        if kind == FeedbackKind.UNKNOWN:
            LOGGER.warning(
                "Ignoring unrecognised feedback %r on %s", message.raw[:64], topic
            )
            return

        waiter = self._waiters.get(device_id)
        if waiter is None:
            LOGGER.debug(
                "Dropping unsolicited %s feedback on %s", kind.value, topic
            )
            return

        if waiter.signal(kind):
            LOGGER.debug(
                "Command %s (%s) received %s",
                waiter.command.short_id,
                waiter.command.name,
                kind.value,
            )
        elif kind == FeedbackKind.ACK:
            LOGGER.debug(
                "Duplicate acknowledgment for %s (seen %d)",
                waiter.command.short_id,
                waiter.ack_count,
            )
