"""Tests for the machine control panel."""

import asyncio
from typing import List

import pytest

from froth_control.core.models import CommandStatus
from froth_control.core.policy import RetryPolicy
from froth_control.dispatcher import CommandDispatcher
from froth_control.notifications import Toast, ToastNotifier
from froth_control.panel import ControlPanel


def _panel(session, fake_mqtt, listener, policy, toasts: List[Toast]) -> ControlPanel:
    dispatcher = CommandDispatcher(session, fake_mqtt, listener, policy)
    return ControlPanel(dispatcher, notifier=ToastNotifier(toasts.append))


def _reply_always(fake_mqtt) -> None:
    def on_publish(topic, payload):
        fake_mqtt.emit_later(0.0, "machine-42/feedback", "got")
        fake_mqtt.emit_later(0.0, "machine-42/feedback", "done")

    fake_mqtt.on_publish = on_publish


@pytest.mark.asyncio
async def test_panel_defaults_to_session_device(fake_mqtt, listener, session, fast_policy):
    panel = _panel(session, fake_mqtt, listener, fast_policy, [])

    assert panel.device_id == "machine-42"
    assert panel.is_enabled()
    assert panel.processing is None
    assert panel.latches == {"up": False, "down": False}


@pytest.mark.asyncio
async def test_controls_disabled_while_processing(
    fake_mqtt, listener, session, fast_policy
):
    toasts: List[Toast] = []
    panel = _panel(session, fake_mqtt, listener, fast_policy, toasts)

    pending = asyncio.create_task(panel.press("flushing"))
    await asyncio.sleep(0)

    assert not panel.is_enabled()
    assert panel.processing == "flushing"

    assert await panel.press("hot_water") is None
    assert toasts[-1].description == "Cannot send hot_water: flushing is still processing"

    result = await pending
    assert result is not None
    assert result.status == CommandStatus.FAILED
    assert panel.is_enabled()
    assert fake_mqtt.published_to("machine-42/input") == [b"flushing"] * 3


@pytest.mark.asyncio
async def test_latch_recorded_only_on_completion(
    fake_mqtt, listener, session, fast_policy
):
    panel = _panel(session, fake_mqtt, listener, fast_policy, [])

    result = await panel.toggle_latch("up", True)

    assert result is not None and result.status == CommandStatus.FAILED
    assert panel.latches["up"] is False

    _reply_always(fake_mqtt)
    result = await panel.toggle_latch("up", True)

    assert result is not None and result.ok
    assert panel.latches == {"up": True, "down": False}
    assert fake_mqtt.published_to("machine-42/input")[-1] == b"up_on"

    await panel.toggle_latch("UP", False)
    assert panel.latches["up"] is False
    assert fake_mqtt.published_to("machine-42/input")[-1] == b"up_off"


@pytest.mark.asyncio
async def test_unknown_latch_raises(fake_mqtt, listener, session, fast_policy):
    panel = _panel(session, fake_mqtt, listener, fast_policy, [])

    with pytest.raises(ValueError):
        await panel.toggle_latch("sideways", True)


@pytest.mark.asyncio
async def test_press_reports_dispatch_errors(fake_mqtt, listener, session, fast_policy):
    toasts: List[Toast] = []
    dispatcher = CommandDispatcher(session, fake_mqtt, listener, fast_policy)
    panel = ControlPanel(
        dispatcher, device_id="machine-9", notifier=ToastNotifier(toasts.append)
    )

    assert await panel.press("flushing") is None
    assert toasts[-1].title == "Error"
    assert "machine-9" in toasts[-1].description
    assert fake_mqtt.published == []


@pytest.mark.asyncio
async def test_cancel_resolves_pending_press(fake_mqtt, listener, session):
    dispatcher = CommandDispatcher(
        session, fake_mqtt, listener, RetryPolicy(ack_timeout_seconds=5.0)
    )
    panel = ControlPanel(dispatcher)

    pending = asyncio.create_task(panel.press("Demo"))
    await asyncio.sleep(0.01)

    assert panel.cancel("screen closed") is True
    result = await pending

    assert result is not None
    assert result.status == CommandStatus.CANCELLED
    assert panel.cancel() is False
