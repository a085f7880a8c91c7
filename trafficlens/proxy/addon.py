"""
mitmproxy Addon for Exchange Capture

Hooks into mitmproxy's event system to turn every intercepted
request/response pair into four UI events:

- requestheaders: exchange created, ``proxy:request`` emitted, body tap or hold
- request: request body complete, ``proxy:request-body`` emitted; kill-dropped flows end here
- responseheaders: ``proxy:response`` emitted, body tap installed
- response: body decoded, ``proxy:response-body`` emitted
- error: transport errors, with expected noise suppressed

Bodies are streamed through to the peer untouched; the taps only copy the
chunks into the exchange's accumulators.
"""

from typing import Callable, Dict, Optional

import structlog
from mitmproxy import flow as mflow
from mitmproxy import http

from .decoder import DecodeResult, decode_body, decode_failure
from .events import EventSink
from .exchange import (
    REQUEST,
    REQUEST_BODY,
    RESPONSE,
    RESPONSE_BODY,
    BodyAccumulator,
    Exchange,
    format_size,
    snapshot_headers,
)
from .intercept import KILL_MARKER, InterceptController
from .noise import is_expected_noise

logger = structlog.get_logger()

UPSTREAM_ERROR_PREFIX = "[TrafficLens Error] Upstream request failed."


def body_tap(accumulator: BodyAccumulator) -> Callable[[bytes], bytes]:
    """Stream modifier that copies chunks and passes them on unchanged"""

    def tap(chunk: bytes) -> bytes:
        if chunk:
            accumulator.append(chunk)
        return chunk

    return tap


class CaptureAddon:
    """
    mitmproxy addon that captures exchanges for one session

    The exchange map is only touched from mitmproxy hooks, which all run on
    the owning engine's event loop.
    """

    def __init__(
        self,
        sink: EventSink,
        intercept: Optional[InterceptController] = None,
        session_id: Optional[str] = None,
    ):
        self.sink = sink
        self.intercept = intercept if intercept is not None else InterceptController()
        self.session_id = session_id
        self.exchanges: Dict[str, Exchange] = {}
        self.logger = logger.bind(component="capture_addon", session=session_id)

        # Statistics
        self.stats = {
            "requests_captured": 0,
            "responses_captured": 0,
            "requests_held": 0,
            "bodies_undecoded": 0,
            "noise_suppressed": 0,
            "errors": 0,
        }

    def requestheaders(self, flow: http.HTTPFlow):
        """
        Called when the request line and headers are in

        Args:
            flow: mitmproxy HTTP flow object
        """
        try:
            if flow.request.method.upper() == "CONNECT":
                return

            exchange = Exchange(
                request_id=flow.id,
                method=flow.request.method,
                url=flow.request.pretty_url,
                request_headers=snapshot_headers(flow.request.headers),
                held=self.intercept.enabled,
            )
            self.exchanges[exchange.request_id] = exchange
            self.stats["requests_captured"] += 1

            self._emit(exchange, REQUEST, exchange.request_event())

            if exchange.held:
                # The body stays buffered by mitmproxy until the hold is resolved
                self.intercept.hold(exchange.request_id, flow)
                self.stats["requests_held"] += 1
            else:
                flow.request.stream = body_tap(exchange.request_body)
                exchange.request_streamed = True

        except Exception as e:
            self.logger.error("Error in requestheaders hook", error=str(e))
            self.stats["errors"] += 1

    def request(self, flow: http.HTTPFlow):
        """Called once the full request body has passed through"""
        try:
            if flow.metadata.pop(KILL_MARKER, False):
                self._kill_dropped(flow)
                return

            exchange = self.exchanges.get(flow.id)
            if exchange is None:
                return

            if not exchange.request_streamed and not exchange.request_body.closed:
                raw = flow.request.raw_content
                if raw:
                    exchange.request_body.append(raw)

            self._finish_request_body(exchange)

        except Exception as e:
            self.logger.error("Error in request hook", error=str(e), url=flow.request.pretty_url)
            self.stats["errors"] += 1

    def responseheaders(self, flow: http.HTTPFlow):
        """Called when the origin's status line and headers arrive"""
        try:
            exchange = self.exchanges.get(flow.id)
            if exchange is None or flow.response is None:
                return

            self._record_response_headers(exchange, flow.response)
            self._finish_request_body(exchange)
            self._emit(exchange, RESPONSE, exchange.response_event())

            flow.response.stream = body_tap(exchange.response_body)
            exchange.response_streamed = True

        except Exception as e:
            self.logger.error("Error in responseheaders hook", error=str(e), url=flow.request.pretty_url)
            self.stats["errors"] += 1

    def response(self, flow: http.HTTPFlow):
        """
        Called when the response is complete

        Also covers responses that never went through responseheaders, such
        as the synthetic reply of a dropped request.
        """
        exchange = self.exchanges.pop(flow.id, None)
        if exchange is None:
            return

        try:
            if RESPONSE not in exchange.emitted and flow.response is not None:
                self._record_response_headers(exchange, flow.response)
                self._finish_request_body(exchange)
                self._emit(exchange, RESPONSE, exchange.response_event())

            if not exchange.response_streamed and not exchange.response_body.closed and flow.response is not None:
                raw = flow.response.raw_content
                if raw:
                    exchange.response_body.append(raw)

            self.stats["responses_captured"] += 1

        except Exception as e:
            self.logger.error("Error in response hook", error=str(e), url=exchange.url)
            self.stats["errors"] += 1

        self._finish_response_body(exchange)

    def error(self, flow: http.HTTPFlow):
        """
        Called when a flow fails

        Operator kills and expected transport noise end silently. Anything
        else is logged and, if no response headers arrived, reported as a
        status 0 exchange.
        """
        exchange = self.exchanges.pop(flow.id, None)
        err = flow.error

        try:
            if err is not None and err.msg == mflow.Error.KILLED_MESSAGE:
                self.logger.debug("Flow killed", request_id=flow.id)
                return

            if is_expected_noise(err):
                self.stats["noise_suppressed"] += 1
                return

            error_msg = err.msg if err is not None else "Unknown error"
            self.stats["errors"] += 1
            self.logger.warning(
                "Flow error",
                url=flow.request.pretty_url if flow.request else "unknown",
                error=error_msg
            )

            if exchange is None or RESPONSE in exchange.emitted:
                return

            exchange.status_code = 0
            self._finish_request_body(exchange)
            self._emit(exchange, RESPONSE, exchange.response_event())

            exchange.response_body.finalize()
            exchange.decoded = DecodeResult(
                text=f"{UPSTREAM_ERROR_PREFIX}\nError: {error_msg}",
                diagnostic=error_msg,
            )
            self._emit(exchange, RESPONSE_BODY, exchange.response_body_event())

        except Exception as e:
            self.logger.error("Error in error hook", error=str(e))

    def _kill_dropped(self, flow: http.HTTPFlow):
        self.exchanges.pop(flow.id, None)
        if flow.killable:
            flow.kill()
        self.logger.debug("Dropped request killed", request_id=flow.id)

    def reset(self):
        """Drop every in-flight exchange without emitting anything"""
        self.exchanges.clear()

    def _record_response_headers(self, exchange: Exchange, response: http.Response):
        exchange.status_code = response.status_code
        exchange.response_headers = snapshot_headers(response.headers)
        exchange.content_encoding = response.headers.get("content-encoding")
        exchange.content_type = response.headers.get("content-type", "")

    def _finish_request_body(self, exchange: Exchange):
        if REQUEST_BODY in exchange.emitted or RESPONSE in exchange.emitted:
            return
        body = exchange.request_body.finalize()
        if not body:
            return
        self._emit(exchange, REQUEST_BODY, exchange.request_body_event(body.decode("utf-8", errors="replace")))

    def _finish_response_body(self, exchange: Exchange):
        try:
            body = exchange.response_body.finalize()
            exchange.size_bytes = len(body)
            exchange.decoded = decode_body(body, exchange.content_encoding)
        except Exception as e:
            self.logger.error("Error processing response body", error=str(e), url=exchange.url)
            exchange.decoded = decode_failure(exchange.content_encoding, e)

        if exchange.decoded.diagnostic:
            self.stats["bodies_undecoded"] += 1
            self.logger.debug(
                "Response body not decoded",
                url=exchange.url,
                encoding=exchange.content_encoding,
                diagnostic=exchange.decoded.diagnostic,
                size=format_size(exchange.size_bytes)
            )

        self._emit(exchange, RESPONSE_BODY, exchange.response_body_event())

    def _emit(self, exchange: Exchange, channel: str, payload: dict):
        if not exchange.claim(channel):
            return
        try:
            self.sink.emit(channel, payload, self.session_id)
        except Exception as e:
            self.logger.error("Failed to emit event", channel=channel, request_id=exchange.request_id, error=str(e))

    def get_stats(self) -> dict:
        """Get addon statistics"""
        stats = self.stats.copy()
        stats["in_flight"] = len(self.exchanges)
        stats["held"] = len(self.intercept)
        return stats
