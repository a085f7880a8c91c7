"""
Intercept Hold Control

When intercept is enabled for a session, newly captured requests are
paused before they reach the origin until an operator forwards or drops
them.

    INTERCEPTED -> HELD -> FORWARDED | DROPPED

Control calls arrive from API/UI threads while flows belong to the engine's
event loop, so every flow operation is handed to ``dispatch`` and the
pending map is guarded by a lock.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog
from mitmproxy import http

logger = structlog.get_logger()

DROPPED_BODY = b"Request dropped by TrafficLens operator"

# Flow metadata key; the capture addon kills flows carrying it in its request hook
KILL_MARKER = "trafficlens.kill"


class HoldState(str, Enum):
    INTERCEPTED = "intercepted"
    HELD = "held"
    FORWARDED = "forwarded"
    DROPPED = "dropped"


class DropAction(str, Enum):
    KILL = "kill"
    RESPOND = "respond"


class TimeoutAction(str, Enum):
    FORWARD = "forward"
    DROP = "drop"


@dataclass
class HeldRequest:
    request_id: str
    flow: http.HTTPFlow
    state: HoldState = HoldState.INTERCEPTED
    held_at: float = 0.0
    timer: Optional[asyncio.TimerHandle] = None


def _run_now(fn: Callable, *args):
    fn(*args)


class InterceptController:
    """Holds, forwards and drops requests for one engine"""

    def __init__(
        self,
        dispatch: Optional[Callable] = None,
        drop_action: DropAction = DropAction.RESPOND,
        drop_status_code: int = 502,
        hold_timeout: Optional[float] = None,
        hold_timeout_action: TimeoutAction = TimeoutAction.FORWARD,
        release_on_disable: bool = True,
    ):
        self.dispatch = dispatch or _run_now
        self.drop_action = DropAction(drop_action)
        self.drop_status_code = drop_status_code
        self.hold_timeout = hold_timeout
        self.hold_timeout_action = TimeoutAction(hold_timeout_action)
        self.release_on_disable = release_on_disable
        self.enabled = False
        self.logger = logger.bind(component="intercept")

        self._pending: Dict[str, HeldRequest] = {}
        self._lock = threading.Lock()

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def set_enabled(self, enabled: bool):
        """
        Toggle intercept for requests captured from now on

        Disabling releases everything still held when release_on_disable
        is set.
        """
        self.enabled = enabled
        self.logger.info("Intercept toggled", enabled=enabled)
        if not enabled and self.release_on_disable:
            for request_id in self.pending_ids():
                self.forward(request_id)

    def hold(self, request_id: str, flow: http.HTTPFlow) -> HeldRequest:
        """Pause ``flow``; must be called from the engine's event loop"""
        held = HeldRequest(request_id=request_id, flow=flow)
        flow.intercept()
        held.state = HoldState.HELD
        held.held_at = time.time()

        if self.hold_timeout:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.logger.warning("Hold timeout ignored outside event loop", request_id=request_id)
            else:
                held.timer = loop.call_later(self.hold_timeout, self._expire, request_id)

        with self._lock:
            self._pending[request_id] = held

        self.logger.debug("Request held", request_id=request_id, url=flow.request.pretty_url)
        return held

    def _take(self, request_id: str, state: HoldState) -> Optional[HeldRequest]:
        with self._lock:
            held = self._pending.pop(request_id, None)
        if held is None:
            return None
        held.state = state
        if held.timer is not None:
            held.timer.cancel()
        return held

    def forward(self, request_id: str) -> bool:
        """Release a held request to the origin unmodified"""
        held = self._take(request_id, HoldState.FORWARDED)
        if held is None:
            return False
        self.dispatch(held.flow.resume)
        self.logger.debug("Request forwarded", request_id=request_id)
        return True

    def drop(self, request_id: str) -> bool:
        """Terminate a held request without contacting the origin"""
        held = self._take(request_id, HoldState.DROPPED)
        if held is None:
            return False
        if self.drop_action is DropAction.RESPOND:
            self.dispatch(self._respond, held.flow)
        else:
            self.dispatch(self._kill, held.flow)
        self.logger.debug("Request dropped", request_id=request_id, action=self.drop_action.value)
        return True

    def clear(self):
        """Forget every held request (used when the engine shuts down)"""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for held in pending:
            if held.timer is not None:
                held.timer.cancel()

    def _expire(self, request_id: str):
        self.logger.info("Hold timed out", request_id=request_id, action=self.hold_timeout_action.value)
        if self.hold_timeout_action is TimeoutAction.DROP:
            self.drop(request_id)
        else:
            self.forward(request_id)

    @staticmethod
    def _kill(flow: http.HTTPFlow):
        # A flow killed while paused in requestheaders never answers its
        # client, so the kill happens once the request hook runs
        flow.metadata[KILL_MARKER] = True
        flow.resume()

    def _respond(self, flow: http.HTTPFlow):
        flow.response = http.Response.make(
            self.drop_status_code,
            DROPPED_BODY,
            {"Content-Type": "text/plain; charset=utf-8", "Connection": "close"},
        )
        flow.resume()
