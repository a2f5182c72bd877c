"""paho-mqtt transport for machine command and feedback topics."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Set

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..core.protocols import MessageHandler

LOGGER = logging.getLogger(__name__)
PAHO_LOGGER = logging.getLogger("paho.mqtt.client")

ConnectionHandler = Callable[[int], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the broker cannot be reached or refuses an operation."""


def _reason_value(reason_code: Any) -> int:
    # paho 2.x hands out ReasonCode objects; tests and MQTT 3.1.1 use ints.
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Runs the threaded paho client and marshals its callbacks onto asyncio.

    Message, connect and disconnect callbacks always execute on the event loop
    that called :meth:`connect`, so handlers may touch asyncio primitives.
    """

    def __init__(self, config: BrokerConfig, *, client_id: str) -> None:
        self.config = config
        self.client_id = client_id

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Event] = None
        self._gone: Optional[asyncio.Event] = None
        self._connack_rc: Optional[int] = None
        self._connected = False
        self._message_handler: Optional[MessageHandler] = None
        self._on_up: List[ConnectionHandler] = []
        self._on_down: List[ConnectionHandler] = []
        self._handler_tasks: Set[asyncio.Future[Any]] = set()

    @property
    def broker_url(self) -> str:
        config = self.config
        if config.transport == "websockets":
            scheme = "wss" if config.tls else "ws"
            return f"{scheme}://{config.host}:{config.port}{config.ws_path}"
        scheme = "mqtts" if config.tls else "mqtt"
        return f"{scheme}://{config.host}:{config.port}"

    def is_connected(self) -> bool:
        return self._connected

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: ConnectionHandler) -> None:
        self._on_up.append(handler)

    def register_disconnect_handler(self, handler: ConnectionHandler) -> None:
        self._on_down.append(handler)

    async def connect(self, timeout: float = 30.0) -> None:
        self._loop = asyncio.get_running_loop()
        self._gone = asyncio.Event()

        client = self._build_client()
        self._client = client
        LOGGER.info("Connecting to %s as %s", self.broker_url, self.client_id)

        self._arm_connack()
        client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        client.loop_start()

        try:
            await self._await_connack(timeout, "connecting to")
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def reconnect(self, timeout: float = 30.0) -> None:
        client = self._require_client("reconnect")
        self._arm_connack()
        self._check(client.reconnect(), "Reconnect")
        await self._await_connack(timeout, "reconnecting to")

    async def disconnect(self, timeout: float = 5.0) -> None:
        client = self._client
        if client is None:
            return

        client.disconnect()
        try:
            if self._gone is not None:
                await asyncio.wait_for(self._gone.wait(), timeout=timeout)
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        info = self._require_client("publish").publish(
            topic, payload, qos=qos, retain=retain
        )
        self._check(info.rc, f"Publish to {topic}")

    def subscribe(self, topic: str, qos: int = 1) -> None:
        rc, _ = self._require_client("subscribe").subscribe(topic, qos=qos)
        self._check(rc, f"Subscribe to {topic}")

    def unsubscribe(self, topic: str) -> None:
        rc, _ = self._require_client("unsubscribe").unsubscribe(topic)
        self._check(rc, f"Unsubscribe from {topic}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _build_client(self) -> mqtt.Client:
        config = self.config
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            transport=config.transport,
        )
        client.enable_logger(PAHO_LOGGER)
        if config.transport == "websockets":
            client.ws_set_options(path=config.ws_path)
        if config.tls:
            client.tls_set()
        if config.username:
            client.username_pw_set(config.username, config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _require_client(self, action: str) -> mqtt.Client:
        if self._client is None:
            raise MQTTConnectionError(f"Cannot {action}: MQTT client not connected")
        return self._client

    @staticmethod
    def _check(rc: Any, action: str) -> None:
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"{action} failed with rc={rc}")

    def _arm_connack(self) -> None:
        self._connack = asyncio.Event()
        self._connack_rc = None

    async def _await_connack(self, timeout: float, action: str) -> None:
        assert self._connack is not None
        try:
            await asyncio.wait_for(self._connack.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                f"Timed out {action} MQTT broker {self.broker_url}"
            ) from exc

        if self._connack_rc != 0:
            raise MQTTConnectionError(
                f"MQTT broker {self.broker_url} refused connection (rc={self._connack_rc})"
            )

    def _call_on_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._connack_rc = rc
        self._connected = rc == 0
        if rc == 0:
            LOGGER.info("Connected to %s", self.broker_url)
        else:
            LOGGER.error("%s refused connection: rc=%s", self.broker_url, rc)

        if self._connack is not None:
            self._call_on_loop(self._connack.set)
        if rc == 0:
            for handler in self._on_up:
                self._call_on_loop(handler, rc)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code=0, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        self._connected = False
        LOGGER.info("Disconnected from %s (rc=%s)", self.broker_url, rc)

        if self._gone is not None:
            self._call_on_loop(self._gone.set)
        for handler in self._on_down:
            self._call_on_loop(handler, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        if self._message_handler is None:
            return
        self._call_on_loop(self._deliver, message.topic, message.payload)

    def _deliver(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
        except Exception:  # pragma: no cover - handler bugs must not kill the loop
            LOGGER.exception("Message handler failed for %s", topic)
