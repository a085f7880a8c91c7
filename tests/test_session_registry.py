"""
Test session lifecycle and request routing in the session registry
"""

from types import SimpleNamespace

import pytest

from trafficlens.core.config import ProxyConfig
from trafficlens.proxy.events import QueueEventSink
from trafficlens.proxy.exceptions import NoPortAvailable, PortAllocationFailed, ProxyStartError
from trafficlens.proxy.registry import DEFAULT_SESSION_ID, SessionRegistry


class FakeAllocator:
    """Hands out the first port not marked taken"""

    def __init__(self, taken=(), max_port=65535):
        self.taken = set(taken)
        self.max_port = max_port

    def find_available_port(self, start_port):
        for port in range(start_port, self.max_port + 1):
            if port not in self.taken:
                return port
        raise NoPortAvailable(start_port, self.max_port)


class FakeEngine:
    """Stands in for ProxyEngine without starting mitmproxy"""

    instances = []
    race_ports = set()

    def __init__(self, config, sink, session_id="default", allocator=None):
        self.session_id = session_id
        self.allocator = allocator
        self.port = None
        self.running = False
        self.held = set()
        self.intercept = SimpleNamespace(enabled=False, pending_ids=lambda: sorted(self.held))
        self.addon = SimpleNamespace(get_stats=lambda: {})
        FakeEngine.instances.append(self)

    def start(self, port=None):
        if port in FakeEngine.race_ports:
            # Someone else bound it after the probe
            self.allocator.taken.add(port)
            raise ProxyStartError(port, "address already in use")
        self.port = port
        self.running = True
        self.allocator.taken.add(port)
        return port

    def stop(self):
        self.running = False
        self.allocator.taken.discard(self.port)

    def set_intercept(self, enabled):
        self.intercept.enabled = enabled

    def forward_request(self, request_id):
        if request_id in self.held:
            self.held.discard(request_id)
            return True
        return False

    def drop_request(self, request_id):
        return self.forward_request(request_id)

    def get_status(self):
        return {"running": self.running, "port": self.port}


@pytest.fixture(autouse=True)
def reset_fakes():
    FakeEngine.instances = []
    FakeEngine.race_ports = set()


@pytest.fixture
def allocator():
    return FakeAllocator()


@pytest.fixture
def registry(allocator):
    config = ProxyConfig(base_port=8081, start_attempts=3)
    registry = SessionRegistry(config, QueueEventSink(), allocator=allocator, engine_factory=FakeEngine)
    registry.init()
    yield registry
    registry.shutdown()


def test_sessions_get_distinct_ports(registry):
    assert registry.create_session("a") == 8081
    assert registry.create_session("b") == 8082
    assert {s.id for s in registry.list_sessions()} == {"a", "b"}


def test_create_is_idempotent(registry):
    port = registry.create_session("a")
    assert registry.create_session("a") == port
    assert len(FakeEngine.instances) == 1


def test_busy_base_port_is_skipped(allocator, registry):
    allocator.taken.add(8081)
    assert registry.create_session("a") == 8082


def test_port_grabbed_between_probe_and_bind_is_retried(registry):
    FakeEngine.race_ports = {8081}
    assert registry.create_session("a") == 8082
    assert not FakeEngine.instances[0].running


def test_allocation_failure_raises(registry):
    registry.allocator.max_port = 8081
    registry.allocator.taken.add(8081)
    with pytest.raises(PortAllocationFailed):
        registry.create_session("a")
    assert registry.get_session("a") is None


def test_exhausted_start_attempts_raise(registry):
    FakeEngine.race_ports = {8081, 8082, 8083}
    with pytest.raises(PortAllocationFailed):
        registry.create_session("a")


def test_stop_session(registry):
    registry.create_session("a")
    engine = FakeEngine.instances[0]
    assert registry.stop_session("a") is True
    assert not engine.running
    assert registry.get_session("a") is None
    assert registry.stop_session("a") is False


def test_port_is_reused_after_stop(registry):
    registry.create_session("a")
    registry.stop_session("a")
    assert registry.create_session("b") == 8081


def test_set_intercept_targets_one_session(registry):
    registry.create_session("a")
    registry.create_session("b")
    assert registry.set_intercept("a", True) is True
    assert registry.get_session("a").intercept_enabled
    assert not registry.get_session("b").intercept_enabled
    assert registry.set_intercept("missing", True) is False


def test_forward_and_drop_find_the_holding_session(registry):
    registry.create_session("a")
    registry.create_session("b")
    FakeEngine.instances[1].held.update({"req-1", "req-2"})

    assert registry.forward_request("req-1") is True
    assert registry.drop_request("req-2") is True
    assert registry.forward_request("req-1") is False
    assert registry.drop_request("unknown") is False


def test_default_session_control(allocator, registry):
    allocator.taken.add(9000)
    assert registry.start_default(9000) == 9001
    assert registry.get_session(DEFAULT_SESSION_ID).port == 9001
    assert registry.stop_default() is True
    assert registry.stop_default() is False


def test_shutdown_stops_everything(registry):
    registry.create_session("a")
    registry.create_session("b")
    registry.shutdown()
    assert registry.list_sessions() == []
    assert not any(engine.running for engine in FakeEngine.instances)


def test_status_reports_sessions(registry):
    registry.create_session("a")
    status = registry.get_status()
    assert status["session_count"] == 1
    assert status["sessions"]["a"] == {"running": True, "port": 8081}


@pytest.mark.asyncio
async def test_async_wrappers(registry):
    port = await registry.create_session_async("a")
    assert port == 8081
    assert await registry.stop_session_async("a") is True
    assert await registry.start_default_async() == 8081
    assert await registry.stop_default_async() is True
