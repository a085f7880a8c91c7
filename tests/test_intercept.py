"""
Test the intercept hold controller and event sinks
"""

import asyncio
import threading

import pytest
from mitmproxy.test import tflow

from trafficlens.proxy.events import CallbackEventSink, FanoutEventSink, QueueEventSink
from trafficlens.proxy.intercept import (
    KILL_MARKER,
    DropAction,
    HoldState,
    InterceptController,
    TimeoutAction,
)


def live_flow():
    f = tflow.tflow()
    f.live = True
    return f


def test_hold_records_state():
    controller = InterceptController()
    f = live_flow()
    held = controller.hold(f.id, f)
    assert held.state is HoldState.HELD
    assert held.held_at > 0
    assert controller.pending_ids() == [f.id]


def test_unknown_ids_return_false():
    controller = InterceptController()
    assert controller.forward("missing") is False
    assert controller.drop("missing") is False


def test_flow_operations_go_through_dispatch():
    calls = []

    def dispatch(fn, *args):
        calls.append(fn)
        fn(*args)

    controller = InterceptController(dispatch=dispatch)
    f = live_flow()
    controller.hold(f.id, f)
    controller.forward(f.id)
    assert len(calls) == 1
    assert not f.intercepted


def test_disable_without_release_keeps_requests_held():
    controller = InterceptController(release_on_disable=False)
    f = live_flow()
    controller.set_enabled(True)
    controller.hold(f.id, f)
    controller.set_enabled(False)
    assert f.id in controller
    assert f.intercepted


def test_clear_forgets_without_resuming():
    controller = InterceptController()
    f = live_flow()
    controller.hold(f.id, f)
    controller.clear()
    assert len(controller) == 0
    assert f.intercepted


@pytest.mark.asyncio
async def test_hold_timeout_forwards_by_default():
    controller = InterceptController(hold_timeout=0.05)
    f = live_flow()
    controller.hold(f.id, f)
    await asyncio.sleep(0.2)
    assert f.id not in controller
    assert not f.intercepted
    assert f.error is None


@pytest.mark.asyncio
async def test_hold_timeout_can_drop():
    controller = InterceptController(
        hold_timeout=0.05,
        hold_timeout_action=TimeoutAction.DROP,
        drop_action=DropAction.RESPOND,
        drop_status_code=504,
    )
    f = live_flow()
    f.response = None
    controller.hold(f.id, f)
    await asyncio.sleep(0.2)
    assert f.id not in controller
    assert f.response.status_code == 504


@pytest.mark.asyncio
async def test_resolving_cancels_the_timer():
    controller = InterceptController(hold_timeout=0.05, hold_timeout_action=TimeoutAction.DROP)
    f = live_flow()
    held = controller.hold(f.id, f)
    controller.forward(f.id)
    assert held.timer.cancelled()
    await asyncio.sleep(0.1)
    assert f.error is None


def test_queue_sink_collects_from_threads():
    sink = QueueEventSink()
    threads = [
        threading.Thread(target=sink.emit, args=("proxy:request", {"id": str(i)}, "s"))
        for i in range(10)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    events = sink.drain()
    assert len(events) == 10
    assert {payload["id"] for _, payload, _ in events} == {str(i) for i in range(10)}


def test_fanout_survives_failing_sink():
    received = []

    def broken(channel, payload, session_id):
        raise RuntimeError("down")

    fanout = FanoutEventSink(CallbackEventSink(broken))
    fanout.add(CallbackEventSink(lambda *event: received.append(event)))
    fanout.emit("proxy:response", {"id": "1"}, "tab")

    assert received == [("proxy:response", {"id": "1"}, "tab")]


def test_drop_answers_with_closing_reply_by_default():
    controller = InterceptController()
    f = live_flow()
    f.response = None
    controller.hold(f.id, f)
    assert controller.drop(f.id) is True
    assert f.response.status_code == 502
    assert f.response.headers["connection"] == "close"
    assert not f.intercepted


def test_kill_drop_marks_flow_and_releases_it():
    controller = InterceptController(drop_action=DropAction.KILL)
    f = live_flow()
    controller.hold(f.id, f)
    assert controller.drop(f.id) is True
    assert f.metadata[KILL_MARKER] is True
    assert not f.intercepted
    assert f.error is None
