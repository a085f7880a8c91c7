"""
Test the capture addon hooks against mitmproxy test flows
"""

import brotli
import pytest
from mitmproxy import flow as mflow
from mitmproxy import http
from mitmproxy.test import tflow, tutils

from trafficlens.proxy.addon import UPSTREAM_ERROR_PREFIX, CaptureAddon
from trafficlens.proxy.events import QueueEventSink
from trafficlens.proxy.exchange import REQUEST, REQUEST_BODY, RESPONSE, RESPONSE_BODY
from trafficlens.proxy.intercept import DROPPED_BODY, KILL_MARKER, DropAction, InterceptController


@pytest.fixture
def sink():
    return QueueEventSink()


@pytest.fixture
def addon(sink):
    return CaptureAddon(sink, session_id="tab-1")


def make_flow(method=b"GET", content=b""):
    f = tflow.tflow(req=tutils.treq(method=method, content=content))
    f.live = True
    return f


def channels(events):
    return [channel for channel, _, _ in events]


def test_streamed_exchange_emits_four_events_in_order(addon, sink):
    f = make_flow(method=b"POST", content=b"")

    addon.requestheaders(f)
    tap = f.request.stream
    assert callable(tap)
    assert tap(b"a=1&") == b"a=1&"
    assert tap(b"b=2") == b"b=2"
    tap(b"")
    addon.request(f)

    f.response = tutils.tresp(content=b"")
    addon.responseheaders(f)
    f.response.stream(b"hello ")
    f.response.stream(b"world")
    f.response.stream(b"")
    addon.response(f)

    events = sink.drain()
    assert channels(events) == [REQUEST, REQUEST_BODY, RESPONSE, RESPONSE_BODY]
    assert all(session == "tab-1" for _, _, session in events)

    request = events[0][1]
    assert request["id"] == f.id
    assert request["method"] == "POST"
    assert request["url"] == "http://address:22/path"

    assert events[1][1] == {"id": f.id, "body": "a=1&b=2"}
    assert events[2][1]["statusCode"] == 200

    body = events[3][1]
    assert body["body"] == "hello world"
    assert body["size"] == "11 B"
    assert body["isBinary"] is False
    assert addon.exchanges == {}


def test_empty_request_body_is_not_emitted(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    f.request.stream(b"")
    addon.request(f)
    assert channels(sink.drain()) == [REQUEST]


def test_buffered_brotli_response_is_decoded(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    addon.request(f)

    f.response = tutils.tresp(
        content=brotli.compress(b'{"answer": 42}'),
        headers=http.Headers(content_encoding="br", content_type="application/json"),
    )
    addon.response(f)

    events = sink.drain()
    assert channels(events) == [REQUEST, RESPONSE, RESPONSE_BODY]
    body = events[-1][1]
    assert body["body"] == '{"answer": 42}'
    assert body["contentType"] == "application/json"


def test_unsupported_encoding_is_counted_not_failed(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    f.response = tutils.tresp(content=b"\x00\x01", headers=http.Headers(content_encoding="compress"))
    addon.response(f)

    body = sink.drain()[-1][1]
    assert body["body"].startswith("[TrafficLens Info]")
    assert addon.get_stats()["bodies_undecoded"] == 1
    assert addon.get_stats()["errors"] == 0


def test_decoder_crash_degrades_to_placeholder(addon, sink, monkeypatch):
    def explode(body, encoding):
        raise MemoryError("too big")

    monkeypatch.setattr("trafficlens.proxy.addon.decode_body", explode)

    f = make_flow()
    addon.requestheaders(f)
    f.response = tutils.tresp(content=b"x", headers=http.Headers(content_encoding="gzip"))
    addon.response(f)

    body = sink.drain()[-1][1]
    assert body["body"] == "[TrafficLens Error] Failed to decode response body.\nEncoding: gzip\nError: too big"


def test_connect_requests_are_ignored(addon, sink):
    f = make_flow(method=b"CONNECT")
    addon.requestheaders(f)
    assert sink.drain() == []
    assert addon.exchanges == {}


def test_intercepted_request_is_held_then_forwarded(addon, sink):
    addon.intercept.set_enabled(True)
    f = make_flow(content=b"payload")

    addon.requestheaders(f)
    assert f.intercepted
    assert not f.request.stream
    assert f.id in addon.intercept
    events = sink.drain()
    assert channels(events) == [REQUEST]
    assert events[0][1]["isIntercepted"] is True

    assert addon.intercept.forward(f.id) is True
    assert not f.intercepted
    assert addon.intercept.forward(f.id) is False

    addon.request(f)
    assert sink.drain()[0][1] == {"id": f.id, "body": "payload"}


def test_dropped_request_is_killed_silently(sink):
    addon = CaptureAddon(sink, intercept=InterceptController(drop_action=DropAction.KILL))
    addon.intercept.set_enabled(True)
    f = make_flow()
    addon.requestheaders(f)
    sink.drain()

    assert addon.intercept.drop(f.id) is True
    assert not f.intercepted
    assert f.error is None

    addon.request(f)
    assert f.error is not None
    assert f.error.msg == mflow.Error.KILLED_MESSAGE
    assert KILL_MARKER not in f.metadata

    addon.error(f)
    assert sink.drain() == []
    assert addon.get_stats()["errors"] == 0
    assert addon.exchanges == {}


def test_dropped_request_can_be_answered_instead(sink):
    addon = CaptureAddon(sink, intercept=InterceptController(drop_action=DropAction.RESPOND, drop_status_code=403))
    addon.intercept.set_enabled(True)
    f = make_flow()
    addon.requestheaders(f)

    assert addon.intercept.drop(f.id)
    assert f.response.status_code == 403
    assert f.response.headers["connection"] == "close"
    assert not f.intercepted

    addon.request(f)
    addon.response(f)
    events = sink.drain()
    assert channels(events) == [REQUEST, RESPONSE, RESPONSE_BODY]
    assert events[1][1]["statusCode"] == 403
    assert events[2][1]["body"] == DROPPED_BODY.decode()


def test_disabling_intercept_releases_everything(addon):
    addon.intercept.set_enabled(True)
    flows = [make_flow() for _ in range(3)]
    for f in flows:
        addon.requestheaders(f)
    assert len(addon.intercept) == 3

    addon.intercept.set_enabled(False)
    assert len(addon.intercept) == 0
    assert not any(f.intercepted for f in flows)


def test_requests_after_disable_are_not_held(addon):
    addon.intercept.set_enabled(True)
    addon.intercept.set_enabled(False)
    f = make_flow()
    addon.requestheaders(f)
    assert not f.intercepted
    assert callable(f.request.stream)


def test_transport_noise_is_suppressed(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    sink.drain()

    f.error = mflow.Error("Client disconnected.")
    addon.error(f)

    assert sink.drain() == []
    stats = addon.get_stats()
    assert stats["noise_suppressed"] == 1
    assert stats["errors"] == 0


def test_upstream_failure_surfaces_as_status_zero(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    sink.drain()

    f.error = mflow.Error("Connection refused")
    addon.error(f)

    events = sink.drain()
    assert channels(events) == [RESPONSE, RESPONSE_BODY]
    assert events[0][1]["statusCode"] == 0
    assert events[1][1]["body"].startswith(UPSTREAM_ERROR_PREFIX)
    assert "Connection refused" in events[1][1]["body"]
    assert addon.get_stats()["errors"] == 1


def test_error_after_response_headers_emits_nothing_more(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    f.response = tutils.tresp(content=b"")
    addon.responseheaders(f)
    sink.drain()

    f.error = mflow.Error("Connection refused")
    addon.error(f)
    assert sink.drain() == []


def test_failing_sink_does_not_break_the_hooks(addon):
    class BrokenSink:
        def emit(self, channel, payload, session_id=None):
            raise RuntimeError("ui gone")

    addon.sink = BrokenSink()
    f = make_flow()
    addon.requestheaders(f)
    f.response = tutils.tresp(content=b"ok")
    addon.response(f)

    assert addon.get_stats()["responses_captured"] == 1
    assert addon.exchanges == {}


def test_reset_abandons_in_flight_exchanges(addon, sink):
    f = make_flow()
    addon.requestheaders(f)
    addon.reset()
    sink.drain()

    f.response = tutils.tresp(content=b"late")
    addon.response(f)
    assert sink.drain() == []


def test_shared_controller_is_used_even_when_empty(sink):
    controller = InterceptController()
    addon = CaptureAddon(sink, intercept=controller)
    assert addon.intercept is controller

    controller.set_enabled(True)
    f = make_flow()
    addon.requestheaders(f)
    assert f.id in controller
    assert addon.get_stats()["requests_held"] == 1
