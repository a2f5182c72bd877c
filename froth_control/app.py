"""Application wiring for froth-control."""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Callable, Optional, Set

import aiohttp

from . import constants
from .adapters import MachineApiClient, MachineApiError, MQTTClient, MQTTConnectionError
from .config import FrothConfig
from .core.journal import CommandJournal
from .core.models import CommandResult, FeedbackMessage
from .core.policy import RetryPolicy
from .core.protocols import Clock, PubSubClient
from .dispatcher import CommandDispatcher
from .feedback import AcknowledgmentListener
from .health import HealthReporter, HealthServer
from .machine_commands import CommandVocabulary
from .notifications import ToastNotifier, ToastSink
from .panel import ControlPanel
from .session import DeviceChannels, SessionContext

LOGGER = logging.getLogger(__name__)


def make_client_id() -> str:
    return f"{constants.CLIENT_ID_PREFIX}_{secrets.token_hex(4)}"


async def resolve_session_location(
    session: SessionContext, api: MachineApiClient
) -> SessionContext:
    """Fill in the machine location from the back office when missing."""
    if session.location:
        return session

    try:
        machine = await api.get_machine(session.device_id)
    except (
        MachineApiError,
        aiohttp.ClientError,
        OSError,
        asyncio.TimeoutError,
    ) as exc:
        LOGGER.warning(
            "Could not resolve location for %s: %s", session.device_id, exc
        )
        return session

    location = machine.get("location") if isinstance(machine, dict) else None
    if not location:
        return session
    return session.with_location(str(location))


class FrothControlApp:
    """Owns the MQTT connection, listener and dispatcher for one kiosk session.

    Usage:
        async with FrothControlApp(config, session) as app:
            result = await app.dispatcher.send("flushing")
    """

    def __init__(
        self,
        config: FrothConfig,
        session: SessionContext,
        *,
        mqtt: Optional[PubSubClient] = None,
        api: Optional[MachineApiClient] = None,
        toast_sink: Optional[ToastSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_mqtt = mqtt is None
        self._mqtt: Any = mqtt or MQTTClient(config.broker, client_id=make_client_id())
        self._api = api

        self._listener = AcknowledgmentListener(self._mqtt)
        self._journal = CommandJournal(path=config.commands.journal_path)
        self._notifier = ToastNotifier(toast_sink, session=session)
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None

        self._dispatcher = CommandDispatcher(
            session,
            self._mqtt,
            self._listener,
            RetryPolicy.from_config(config.commands),
            clock=clock,
            journal=self._journal,
            vocabulary=CommandVocabulary(
                config.commands.extra_commands,
                strict=config.commands.strict_vocabulary,
            ),
        )
        self._dispatcher.add_observer(self._notifier)
        self._dispatcher.add_observer(self._health.record_transition)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[asyncio.Task[None]] = set()
        self._started = False

    @property
    def session(self) -> SessionContext:
        return self._session

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    @property
    def listener(self) -> AcknowledgmentListener:
        return self._listener

    @property
    def journal(self) -> CommandJournal:
        return self._journal

    @property
    def notifier(self) -> ToastNotifier:
        return self._notifier

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("FrothControlApp already started")

        self._loop = asyncio.get_running_loop()

        if self._owns_mqtt:
            self._mqtt.register_disconnect_handler(self._on_mqtt_disconnect)
            self._mqtt.register_connect_handler(self._on_mqtt_connect)
            await self._mqtt.connect()
        await self._health.update("mqtt", True)

        await self._listener.start()
        self._listener.watch(self._session.channels)

        if self._config.health.enabled:
            self._health_server = HealthServer(
                self._health, self._config.health.host, self._config.health.port
            )
            await self._health_server.start()

        self._started = True
        LOGGER.info(
            "Ready to control %s (%s)",
            self._session.device_id,
            self._session.display_name,
        )

    async def close(self, reason: str = "shutdown") -> None:
        aborted = await self._dispatcher.abort_all(reason)
        if aborted:
            LOGGER.info("Abandoned %d outstanding command(s): %s", aborted, reason)

        await self._listener.stop()

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._owns_mqtt:
            try:
                await self._mqtt.disconnect()
            except asyncio.TimeoutError:
                LOGGER.warning("Timed out waiting for MQTT disconnect")

        if self._api is not None:
            await self._api.aclose()

        self._started = False

    async def __aenter__(self) -> "FrothControlApp":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def panel(self, device_id: Optional[str] = None) -> ControlPanel:
        return ControlPanel(
            self._dispatcher, device_id=device_id, notifier=self._notifier
        )

    def watch_device(self, device_id: str) -> None:
        """Start listening to another machine's feedback topic."""
        self._listener.watch(DeviceChannels.for_device(device_id))

    async def send(
        self, command_name: str, device_id: Optional[str] = None
    ) -> CommandResult:
        return await self._dispatcher.send(command_name, device_id)

    async def watch(
        self,
        on_message: Callable[[FeedbackMessage], None],
        *,
        duration: Optional[float] = None,
    ) -> None:
        """Forward every feedback message until ``duration`` elapses or cancelled."""
        self._listener.add_observer(on_message)
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            self._listener.remove_observer(on_message)

    # ------------------------------------------------------------------
    # MQTT callbacks (scheduled onto the loop by the adapter)
    # ------------------------------------------------------------------
    def _on_mqtt_disconnect(self, rc: int) -> None:
        detail = f"disconnected (rc={rc})"
        if rc != 0:
            LOGGER.warning("MQTT connection lost: %s", detail)
        self._schedule_health("mqtt", False, detail)

    def _on_mqtt_connect(self, rc: int) -> None:
        self._schedule_health("mqtt", True, None)
        try:
            self._listener.resubscribe()
        except MQTTConnectionError as exc:
            LOGGER.warning("Could not restore feedback subscriptions: %s", exc)

    def _schedule_health(self, name: str, healthy: bool, detail: Optional[str]) -> None:
        if self._loop is None:
            return
        task = self._loop.create_task(self._health.update(name, healthy, detail))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
