"""Protocol definitions for the pub/sub transport and time source."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol


MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class PubSubClient(Protocol):
    """Minimal transport contract used by the listener and dispatcher."""

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        """Publish ``payload`` on ``topic``.

        Raises:
            RuntimeError: If the message could not be handed to the broker.
        """
        ...

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None: ...


class Clock(Protocol):
    """Time source injected into the dispatcher."""

    def monotonic(self) -> float: ...

    def now(self) -> datetime: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
