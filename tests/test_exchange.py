"""
Test exchange bookkeeping and event payload shapes
"""

import pytest
from mitmproxy import http

from trafficlens.proxy.decoder import DecodeResult
from trafficlens.proxy.exchange import (
    REQUEST,
    REQUEST_BODY,
    RESPONSE,
    RESPONSE_BODY,
    BodyAccumulator,
    Exchange,
    format_size,
    snapshot_headers,
)


def test_format_size():
    assert format_size(0) == "0 B"
    assert format_size(1023) == "1023 B"
    assert format_size(1024) == "1.0 KB"
    assert format_size(1536) == "1.5 KB"
    assert format_size(10 * 1024 * 1024) == "10240.0 KB"


def test_accumulator_keeps_arrival_order():
    acc = BodyAccumulator()
    for chunk in (b"one ", b"", b"two ", b"three"):
        acc.append(chunk)
    assert acc.size == len(b"one two three")
    assert acc.finalize() == b"one two three"


def test_accumulator_finalize_is_idempotent_and_closes():
    acc = BodyAccumulator()
    acc.append(b"data")
    assert acc.finalize() == acc.finalize() == b"data"
    assert acc.closed
    with pytest.raises(RuntimeError):
        acc.append(b"late")


def test_snapshot_headers_lowercases_and_keeps_cookies():
    headers = http.Headers(
        [
            (b"Content-Type", b"text/html"),
            (b"Set-Cookie", b"a=1"),
            (b"Set-Cookie", b"b=2"),
        ]
    )
    snapshot = snapshot_headers(headers)
    assert snapshot == {"content-type": "text/html", "set-cookie": ["a=1", "b=2"]}


def test_claim_allows_each_event_once_in_order():
    exchange = Exchange(request_id="r1", method="GET", url="http://example.com/")
    assert exchange.claim(REQUEST)
    assert not exchange.claim(REQUEST)
    assert exchange.claim(RESPONSE)
    # The request body can no longer follow the response headers
    assert not exchange.claim(REQUEST_BODY)
    assert exchange.claim(RESPONSE_BODY)
    assert not exchange.claim(RESPONSE)


def test_event_payload_shapes():
    exchange = Exchange(
        request_id="r2",
        method="POST",
        url="https://example.com/api",
        request_headers={"host": "example.com"},
    )
    request = exchange.request_event()
    assert set(request) == {"id", "method", "url", "headers", "timestamp", "isIntercepted"}
    assert request["method"] == "POST"
    assert request["isIntercepted"] is False
    assert isinstance(request["timestamp"], int)

    assert exchange.request_body_event("a=1") == {"id": "r2", "body": "a=1"}

    exchange.status_code = 201
    response = exchange.response_event()
    assert set(response) == {"id", "url", "statusCode", "headers", "timestamp"}
    assert response["statusCode"] == 201

    exchange.size_bytes = 2048
    exchange.content_type = "application/json"
    exchange.decoded = DecodeResult(text="{}")
    assert exchange.response_body_event() == {
        "id": "r2",
        "body": "{}",
        "size": "2.0 KB",
        "isBinary": False,
        "contentType": "application/json",
    }


def test_held_exchange_is_flagged_as_intercepted():
    exchange = Exchange(request_id="r3", method="GET", url="https://example.com/", held=True)
    assert exchange.request_event()["isIntercepted"] is True
