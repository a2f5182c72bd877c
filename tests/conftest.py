import asyncio
from typing import Callable, List, Optional, Tuple

import pytest
import pytest_asyncio

from froth_control.core.policy import RetryPolicy
from froth_control.feedback import AcknowledgmentListener
from froth_control.session import SessionContext


class FakeMQTT:
    """In-memory stand-in for the paho wrapper."""

    def __init__(self) -> None:
        self.handler = None
        self.subscriptions: List[Tuple[str, int]] = []
        self.unsubscriptions: List[str] = []
        self.published: List[Tuple[str, bytes, int, bool]] = []
        self.publish_errors: List[Exception] = []
        self.on_publish: Optional[Callable[[str, bytes], None]] = None

    def set_message_handler(self, handler):
        self.handler = handler

    def subscribe(self, topic: str, qos: int = 1):
        self.subscriptions.append((topic, qos))

    def unsubscribe(self, topic: str):
        self.unsubscriptions.append(topic)

    def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False):
        if self.publish_errors:
            raise self.publish_errors.pop(0)
        self.published.append((topic, payload, qos, retain))
        if self.on_publish is not None:
            self.on_publish(topic, payload)

    def emit(self, topic: str, payload) -> None:
        if self.handler is None:
            raise RuntimeError("No handler registered")
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        self.handler(topic, data)

    def emit_later(self, delay: float, topic: str, payload) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self.emit, topic, payload)

    def published_to(self, topic: str) -> List[bytes]:
        return [payload for t, payload, _, _ in self.published if t == topic]


@pytest.fixture
def fake_mqtt() -> FakeMQTT:
    return FakeMQTT()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3, ack_timeout_seconds=0.05, completion_timeout_seconds=0.05
    )


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(device_id="machine-42", user_id="staff-1", location="Lobby")


@pytest_asyncio.fixture
async def listener(fake_mqtt, session):
    listener = AcknowledgmentListener(fake_mqtt)
    await listener.start()
    listener.watch(session.channels)
    yield listener
    await listener.stop()
