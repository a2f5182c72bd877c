"""Tests for the command dispatcher."""

import asyncio

import pytest

from froth_control.adapters.mqtt import MQTTConnectionError
from froth_control.core.journal import CommandJournal
from froth_control.core.models import (
    CommandState,
    CommandStatus,
    CommandTransition,
    FailureReason,
)
from froth_control.core.policy import RetryPolicy
from froth_control.dispatcher import (
    CommandBusyError,
    CommandDispatcher,
    InvalidCommandError,
    UnknownDeviceError,
)
from froth_control.feedback import AcknowledgmentListener
from froth_control.machine_commands import CommandVocabulary
from froth_control.session import SessionContext


def _dispatcher(session, fake_mqtt, listener, policy, **kwargs) -> CommandDispatcher:
    return CommandDispatcher(session, fake_mqtt, listener, policy, **kwargs)


async def _wait_for_publishes(fake_mqtt, count: int, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while len(fake_mqtt.published) < count:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


def _auto_reply(fake_mqtt, *replies, on_attempt: int = 1):
    """Reply with ``(delay, payload)`` pairs once publish number ``on_attempt`` lands."""
    counter = {"publishes": 0}

    def on_publish(topic: str, payload: bytes) -> None:
        counter["publishes"] += 1
        if counter["publishes"] != on_attempt:
            return
        feedback = topic.rsplit("/", 1)[0] + "/feedback"
        for delay, message in replies:
            fake_mqtt.emit_later(delay, feedback, message)

    fake_mqtt.on_publish = on_publish


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["up", "main_brew-1", "Demo", "coffee_brew"])
async def test_send_publishes_command_name_on_input_topic(
    fake_mqtt, listener, session, fast_policy, name
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    _auto_reply(fake_mqtt, (0.0, "got"), (0.0, "done"))

    result = await dispatcher.send(name)

    assert result.status == CommandStatus.COMPLETED
    assert fake_mqtt.published == [("machine-42/input", name.encode("utf-8"), 1, False)]


@pytest.mark.asyncio
async def test_send_completes_after_got_then_done(fake_mqtt, listener, session):
    dispatcher = _dispatcher(session, fake_mqtt, listener, RetryPolicy())
    _auto_reply(fake_mqtt, (0.5, "got"), (1.0, "done"))

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await dispatcher.send("up", "machine-42")
    elapsed = loop.time() - started

    assert result.as_dict() == {"status": "completed"}
    assert result.attempts == 1
    assert elapsed <= 1.6
    assert len(fake_mqtt.published) == 1


@pytest.mark.asyncio
async def test_send_fails_after_three_silent_attempts(fake_mqtt, fast_policy):
    session = SessionContext(device_id="machine-7")
    listener = AcknowledgmentListener(fake_mqtt)
    await listener.start()
    listener.watch(session.channels)
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await dispatcher.send("down", "machine-7")
    elapsed = loop.time() - started

    assert result.status == CommandStatus.FAILED
    assert result.attempts == 3
    assert result.reason == FailureReason.ACK_TIMEOUT
    assert result.as_dict() == {"status": "failed", "attempts": 3, "reason": "ack_timeout"}
    assert elapsed >= 3 * fast_policy.ack_timeout_seconds
    assert fake_mqtt.published_to("machine-7/input") == [b"down"] * 3
    assert len(fake_mqtt.published) == 3
    await listener.stop()


@pytest.mark.asyncio
async def test_ack_during_retry_delay_skips_republish(fake_mqtt, listener, session):
    policy = RetryPolicy(
        max_attempts=3,
        ack_timeout_seconds=0.05,
        completion_timeout_seconds=1.0,
        retry_delay_seconds=0.2,
    )
    dispatcher = _dispatcher(session, fake_mqtt, listener, policy)
    transitions: list[CommandTransition] = []
    dispatcher.add_observer(transitions.append)
    _auto_reply(fake_mqtt, (0.1, "got"), (0.3, "done"))

    result = await dispatcher.send("flushing")

    assert result.ok
    assert result.attempts == 1
    assert fake_mqtt.published_to("machine-42/input") == [b"flushing"]
    assert [t.state for t in transitions] == [
        CommandState.SENT,
        CommandState.ACKNOWLEDGED,
        CommandState.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_retry_succeeds_when_ack_arrives_on_second_attempt(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    _auto_reply(fake_mqtt, (0.0, "got"), (0.01, "done"), on_attempt=2)

    result = await dispatcher.send("flushing")

    assert result.status == CommandStatus.COMPLETED
    assert result.attempts == 2
    assert len(fake_mqtt.published) == 2


@pytest.mark.asyncio
async def test_acknowledged_transition_happens_once(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    transitions: list[CommandTransition] = []
    dispatcher.add_observer(transitions.append)
    _auto_reply(
        fake_mqtt, (0.0, "got"), (0.005, "got"), (0.01, "got"), (0.02, "done")
    )

    result = await dispatcher.send("save")

    assert result.ok
    states = [t.state for t in transitions]
    assert states == [
        CommandState.SENT,
        CommandState.ACKNOWLEDGED,
        CommandState.COMPLETED,
    ]
    assert states.count(CommandState.ACKNOWLEDGED) == 1


@pytest.mark.asyncio
async def test_second_send_while_outstanding_is_rejected_busy(
    fake_mqtt, listener, session
):
    policy = RetryPolicy(
        max_attempts=3, ack_timeout_seconds=0.2, completion_timeout_seconds=0.2
    )
    dispatcher = _dispatcher(session, fake_mqtt, listener, policy)

    first = asyncio.create_task(dispatcher.send("up"))
    await _wait_for_publishes(fake_mqtt, 1)

    assert dispatcher.is_busy()
    assert dispatcher.state() == CommandState.SENT

    with pytest.raises(CommandBusyError) as excinfo:
        await dispatcher.send("down")

    assert excinfo.value.code == "busy"
    assert excinfo.value.outstanding.name == "up"
    assert dispatcher.outstanding().attempt == 1
    assert len(fake_mqtt.published) == 1

    fake_mqtt.emit("machine-42/feedback", "got")
    fake_mqtt.emit("machine-42/feedback", "done")
    result = await first

    assert result.ok
    assert result.attempts == 1
    assert fake_mqtt.published_to("machine-42/input") == [b"up"]
    assert not dispatcher.is_busy()


@pytest.mark.asyncio
async def test_new_command_allowed_after_terminal_state(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)

    failed = await dispatcher.send("exit")
    assert failed.status == CommandStatus.FAILED
    assert dispatcher.state() == CommandState.IDLE

    _auto_reply(fake_mqtt, (0.0, "got"), (0.0, "done"), on_attempt=1)
    fake_mqtt.published.clear()
    completed = await dispatcher.send("exit")

    assert completed.ok
    assert len(fake_mqtt.published) == 1


@pytest.mark.asyncio
async def test_cancel_stops_retries_and_resolves_cancelled(
    fake_mqtt, listener, session
):
    policy = RetryPolicy(
        max_attempts=3, ack_timeout_seconds=0.05, completion_timeout_seconds=0.05
    )
    dispatcher = _dispatcher(session, fake_mqtt, listener, policy)

    pending = asyncio.create_task(dispatcher.send("hot_water"))
    await _wait_for_publishes(fake_mqtt, 1)

    assert dispatcher.cancel(reason="screen closed") is True
    result = await pending

    assert result.status == CommandStatus.CANCELLED
    assert result.reason == FailureReason.CANCELLED
    assert not dispatcher.is_busy()

    await asyncio.sleep(policy.total_ack_budget + 0.05)
    assert len(fake_mqtt.published) == 1
    assert dispatcher.cancel() is False


@pytest.mark.asyncio
async def test_cancelling_the_awaiting_task_tears_down_the_wait(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    transitions: list[CommandTransition] = []
    dispatcher.add_observer(transitions.append)

    pending = asyncio.create_task(dispatcher.send("hot_milk"))
    await _wait_for_publishes(fake_mqtt, 1)

    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    await asyncio.sleep(fast_policy.total_ack_budget + 0.05)

    assert len(fake_mqtt.published) == 1
    assert not dispatcher.is_busy()
    assert transitions[-1].state == CommandState.CANCELLED


@pytest.mark.asyncio
async def test_completion_timeout_fails_without_retry(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    _auto_reply(fake_mqtt, (0.0, "got"))

    result = await dispatcher.send("main_brew-2")

    assert result.status == CommandStatus.FAILED
    assert result.reason == FailureReason.COMPLETION_TIMEOUT
    assert result.attempts == 1
    assert len(fake_mqtt.published) == 1


@pytest.mark.asyncio
async def test_done_without_got_counts_as_acknowledged(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    _auto_reply(fake_mqtt, (0.0, "done"))

    result = await dispatcher.send("black_tea")

    assert result.ok
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_publish_failure_is_retried(fake_mqtt, listener, session, fast_policy):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    fake_mqtt.publish_errors.append(MQTTConnectionError("Publish failed with rc=4"))
    _auto_reply(fake_mqtt, (0.0, "got"), (0.0, "done"))

    result = await dispatcher.send("light_tea")

    assert result.ok
    assert result.attempts == 2
    assert len(fake_mqtt.published) == 1


@pytest.mark.asyncio
async def test_repeated_publish_failure_reports_publish_failure(
    fake_mqtt, listener, session, fast_policy
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    fake_mqtt.publish_errors.extend(
        MQTTConnectionError("MQTT client not connected") for _ in range(3)
    )

    result = await dispatcher.send("strong_tea")

    assert result.status == CommandStatus.FAILED
    assert result.reason == FailureReason.PUBLISH_FAILURE
    assert result.attempts == 3
    assert fake_mqtt.published == []


@pytest.mark.asyncio
async def test_feedback_for_other_device_is_ignored(
    fake_mqtt, listener, session, fast_policy
):
    listener.watch(SessionContext(device_id="machine-9").channels)
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)

    def on_publish(topic: str, payload: bytes) -> None:
        fake_mqtt.emit_later(0.0, "machine-9/feedback", "got")

    fake_mqtt.on_publish = on_publish

    result = await dispatcher.send("up")

    assert result.status == CommandStatus.FAILED
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_devices_are_busy_independently(fake_mqtt, listener, session):
    listener.watch(SessionContext(device_id="machine-9").channels)
    policy = RetryPolicy(
        max_attempts=1, ack_timeout_seconds=0.1, completion_timeout_seconds=0.1
    )
    dispatcher = _dispatcher(session, fake_mqtt, listener, policy)

    first = asyncio.create_task(dispatcher.send("up"))
    second = asyncio.create_task(dispatcher.send("up", "machine-9"))
    await _wait_for_publishes(fake_mqtt, 2)

    assert dispatcher.is_busy("machine-42")
    assert dispatcher.is_busy("machine-9")

    fake_mqtt.emit("machine-9/feedback", "done")
    results = await asyncio.gather(first, second)

    assert results[0].status == CommandStatus.FAILED
    assert results[1].ok


@pytest.mark.asyncio
async def test_invalid_commands_are_rejected(fake_mqtt, listener, session, fast_policy):
    dispatcher = _dispatcher(
        session,
        fake_mqtt,
        listener,
        fast_policy,
        vocabulary=CommandVocabulary(["descale"], strict=True),
    )

    with pytest.raises(InvalidCommandError):
        await dispatcher.send("   ")

    with pytest.raises(InvalidCommandError) as excinfo:
        await dispatcher.send("cofee_brew")
    assert excinfo.value.code == "unknown_command"

    with pytest.raises(UnknownDeviceError):
        await dispatcher.send("up", "machine-unknown")

    assert fake_mqtt.published == []

    _auto_reply(fake_mqtt, (0.0, "done"))
    assert (await dispatcher.send("descale")).ok


@pytest.mark.asyncio
async def test_unknown_command_is_sent_when_vocabulary_is_open(
    fake_mqtt, listener, session, fast_policy, caplog
):
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy)
    _auto_reply(fake_mqtt, (0.0, "done"))

    with caplog.at_level("WARNING", logger="froth_control.dispatcher"):
        result = await dispatcher.send("latte_art")

    assert result.ok
    assert "not in the machine vocabulary" in caplog.text


@pytest.mark.asyncio
async def test_results_are_journalled_and_observer_errors_contained(
    fake_mqtt, listener, session, fast_policy
):
    journal = CommandJournal()
    dispatcher = _dispatcher(session, fake_mqtt, listener, fast_policy, journal=journal)

    def broken_observer(transition: CommandTransition) -> None:
        raise ValueError("boom")

    dispatcher.add_observer(broken_observer)

    result = await dispatcher.send("coffee_brew")

    assert result.status == CommandStatus.FAILED
    assert journal.last_result("machine-42") is result
    assert journal.failures() == [result]


@pytest.mark.asyncio
async def test_abort_all_cancels_outstanding_commands(fake_mqtt, listener, session):
    policy = RetryPolicy(
        max_attempts=3, ack_timeout_seconds=0.5, completion_timeout_seconds=0.5
    )
    dispatcher = _dispatcher(session, fake_mqtt, listener, policy)

    pending = asyncio.create_task(dispatcher.send("flushing"))
    await _wait_for_publishes(fake_mqtt, 1)

    aborted = await dispatcher.abort_all("shutdown")
    result = await pending

    assert aborted == 1
    assert result.status == CommandStatus.CANCELLED
    assert len(fake_mqtt.published) == 1
