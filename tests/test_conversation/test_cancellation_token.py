import asyncio

import pytest

from helmsman.cancellation import CancellationToken, CancelledByToken, race
from helmsman.events import EventChannel, EventKind


def test_child_follows_parent_but_not_the_other_way():
    parent = CancellationToken()
    child = parent.child()
    sibling = parent.child()

    child.cancel("child only")
    assert not parent.cancelled
    assert not sibling.cancelled

    parent.cancel("everyone")
    assert sibling.cancelled
    assert sibling.reason == "everyone"
    assert child.reason == "child only"


def test_released_child_no_longer_follows_parent():
    parent = CancellationToken()
    child = parent.child()
    child.release()

    parent.cancel()

    assert not child.cancelled


def test_child_of_cancelled_parent_starts_cancelled():
    parent = CancellationToken()
    parent.cancel("gone")

    assert parent.child().reason == "gone"
    with pytest.raises(CancelledByToken):
        parent.raise_if_cancelled()


@pytest.mark.asyncio
async def test_race_returns_value_when_work_finishes():
    outcome = await race(asyncio.sleep(0, result=7), CancellationToken(), timeout=1)

    assert outcome.status == "done"
    assert outcome.value == 7


@pytest.mark.asyncio
async def test_race_reports_cancellation_reason():
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel, "stop now")

    outcome = await race(asyncio.sleep(10), token, grace=0.1)

    assert outcome.status == "cancelled"
    assert outcome.reason == "stop now"
    assert outcome.abandoned is False


@pytest.mark.asyncio
async def test_race_timeout_reason_and_exception_propagation():
    outcome = await race(asyncio.sleep(10), CancellationToken(), timeout=0.05, grace=0.1)
    assert outcome.status == "timeout"
    assert outcome.reason == "Timed out after 0.05s"

    async def _fail():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await race(_fail(), CancellationToken())


@pytest.mark.asyncio
async def test_race_treats_token_error_from_work_as_cancellation():
    token = CancellationToken()

    async def _cooperative():
        await token.wait()
        token.raise_if_cancelled()

    asyncio.get_running_loop().call_later(0.03, token.cancel, "user stop")
    outcome = await race(_cooperative(), token, grace=0.1)

    assert outcome.status == "cancelled"
    assert outcome.reason == "user stop"


@pytest.mark.asyncio
async def test_race_abandons_work_that_ignores_cancellation():
    release = asyncio.Event()

    async def _stubborn():
        while not release.is_set():
            try:
                await asyncio.sleep(0.01)
            except asyncio.CancelledError:
                continue
        return "finished"

    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.03, token.cancel, "stop")
    outcome = await race(_stubborn(), token, grace=0.05)
    release.set()
    await asyncio.sleep(0.05)

    assert outcome.status == "cancelled"
    assert outcome.abandoned is True


def test_event_channel_filters_and_unsubscribes():
    channel = EventChannel()
    seen = []
    unsubscribe = channel.subscribe(seen.append, [EventKind.PLUGIN_STATUS])

    channel.publish(EventKind.CATALOG_CHANGED, added=["x"])
    channel.publish(EventKind.PLUGIN_STATUS, plugin_id="acme", status="ready")
    unsubscribe()
    channel.publish(EventKind.PLUGIN_STATUS, plugin_id="acme", status="closed")

    assert [e.payload["status"] for e in seen] == ["ready"]


def test_failing_event_handler_does_not_stop_others():
    channel = EventChannel()
    seen = []

    def _broken(event):
        raise RuntimeError("handler bug")

    channel.subscribe(_broken)
    channel.subscribe(seen.append)
    channel.publish(EventKind.COMMANDS_CHANGED, count=1)

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_queue_subscriber_receives_matching_events_and_drops_overflow():
    channel = EventChannel()
    queue, unsubscribe = channel.subscribe_queue([EventKind.CATALOG_CHANGED], maxsize=2)

    channel.publish(EventKind.CATALOG_CHANGED, added=["a"])
    channel.publish(EventKind.PLUGIN_STATUS, plugin_id="acme", status="ready")
    channel.publish(EventKind.CATALOG_CHANGED, added=["b"])
    channel.publish(EventKind.CATALOG_CHANGED, added=["c"])
    unsubscribe()
    channel.publish(EventKind.CATALOG_CHANGED, added=["d"])

    received = [await queue.get(), await queue.get()]
    assert [e.payload["added"] for e in received] == [["a"], ["b"]]
    assert queue.empty()
