"""
Proxy Engine for mitmproxy Lifecycle Management

A ProxyEngine is one capture listener: a port, its capture addon and its
intercept controller. mitmproxy keeps its master in process-global context,
so every engine in the process is served by one shared ``ProxyHost``: a
single DumpMaster on its own thread with one ``regular@<port>`` mode per
engine. Flows are routed back to the owning engine by the port the client
connected to.
"""

import asyncio
import concurrent.futures
import threading
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from mitmproxy import http, options
from mitmproxy.tools import dump

from .addon import CaptureAddon
from .events import EventSink
from .exceptions import ProxyStartError
from .intercept import InterceptController
from .noise import install_noise_filter
from .ports import PortAllocator

logger = structlog.get_logger()

LISTENER_POLL_SECONDS = 0.01


def listen_mode(port: int) -> str:
    return f"regular@{port}"


class ListenerRouter:
    """
    mitmproxy addon that hands each flow to the addon of the listener it
    arrived on
    """

    name = "trafficlens_router"

    def __init__(self):
        self.listeners: Dict[int, CaptureAddon] = {}
        self.on_running: Optional[Callable[[], None]] = None

    def _route(self, flow: http.HTTPFlow) -> Optional[CaptureAddon]:
        sockname = flow.client_conn.sockname
        if not sockname:
            return None
        return self.listeners.get(sockname[1])

    def running(self):
        if self.on_running:
            self.on_running()

    def requestheaders(self, flow: http.HTTPFlow):
        addon = self._route(flow)
        if addon:
            addon.requestheaders(flow)

    def request(self, flow: http.HTTPFlow):
        addon = self._route(flow)
        if addon:
            addon.request(flow)

    def responseheaders(self, flow: http.HTTPFlow):
        addon = self._route(flow)
        if addon:
            addon.responseheaders(flow)

    def response(self, flow: http.HTTPFlow):
        addon = self._route(flow)
        if addon:
            addon.response(flow)

    def error(self, flow: http.HTTPFlow):
        addon = self._route(flow)
        if addon:
            addon.error(flow)


class ProxyHost:
    """
    Owns the process's mitmproxy master

    The master thread is started with the first listener and shut down
    when the last one is removed. Listener changes are serialised.
    """

    def __init__(self, config):
        """
        Initialize the proxy host

        Args:
            config: ProxyConfig section of the application configuration
        """
        self.config = config
        self.logger = logger.bind(component="proxy_host")
        self.router = ListenerRouter()

        self._lock = threading.RLock()
        self._master: Optional[dump.DumpMaster] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and self._master is not None

    def ports(self) -> List[int]:
        with self._lock:
            return sorted(self.router.listeners)

    def add_listener(self, port: int, addon: CaptureAddon):
        """
        Start listening on ``port`` and route its flows to ``addon``

        Raises:
            ProxyStartError: if the listener did not come up in time
        """
        with self._lock:
            if port in self.router.listeners:
                raise ProxyStartError(port, "port already served by another engine")

            self.router.listeners[port] = addon
            try:
                if not self.running:
                    self._start_master()
                else:
                    self._call(self._apply_modes())
                ok, reason = self._call(self._listener_state(port))
            except ProxyStartError:
                self._discard(port)
                raise
            except Exception as e:
                self._discard(port)
                raise ProxyStartError(port, str(e)) from e

            if not ok:
                self._discard(port)
                raise ProxyStartError(port, reason or "listener is not running")

    def remove_listener(self, port: int):
        """Stop listening on ``port``; the master goes down with its last listener"""
        with self._lock:
            if port in self.router.listeners:
                self._discard(port)

    def call_soon(self, fn: Callable, *args):
        """Run ``fn(*args)`` on the master's event loop"""
        loop = self._loop
        if loop is None or loop.is_closed():
            self.logger.warning("Proxy host not running, dropping call", call=getattr(fn, "__name__", repr(fn)))
            return
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(fn, *args)

    def _discard(self, port: int):
        """Drop ``port`` from the served modes; caller holds the lock"""
        self.router.listeners.pop(port, None)
        if not self.running:
            return
        if not self.router.listeners:
            self._stop_master()
            return
        try:
            self._call(self._apply_modes())
        except Exception as e:
            self.logger.error("Failed to close listener", port=port, error=str(e))

    def _modes(self) -> List[str]:
        return [listen_mode(port) for port in sorted(self.router.listeners)]

    def _call(self, coro, timeout: Optional[float] = None):
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout or self.config.startup_timeout_seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise ProxyStartError(0, "timed out waiting for the proxy event loop")

    def _start_master(self):
        self._ready.clear()
        self._startup_error = None
        self.router.on_running = self._ready.set

        self._thread = threading.Thread(
            target=self._run_proxy,
            args=(self._modes(),),
            daemon=True,
            name="mitmproxy-host"
        )
        self._thread.start()

        if not self._ready.wait(self.config.startup_timeout_seconds):
            self._stop_master()
            raise ProxyStartError(0, "timed out waiting for mitmproxy to start")
        if self._startup_error is not None:
            error = self._startup_error
            self._stop_master()
            raise ProxyStartError(0, str(error))

        self.logger.info("Proxy host started", confdir=str(self.config.confdir))

    def _stop_master(self):
        self.logger.info("Stopping proxy host...")
        if self._master is not None and self._loop is not None and not self._loop.is_closed():
            try:
                self._loop.call_soon_threadsafe(self._master.shutdown)
            except RuntimeError:
                # Loop closed between the check and the call
                pass

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self.config.shutdown_timeout_seconds)
            if self._thread.is_alive():
                self.logger.warning("Proxy host thread did not exit in time")

        self._master = None
        self._loop = None
        self._thread = None
        self.logger.info("Proxy host stopped")

    def _run_proxy(self, modes: List[str]):
        """
        Run the mitmproxy master

        This runs in a separate thread and blocks until shutdown.
        """
        try:
            self.logger.debug("Proxy thread starting...", modes=modes)
            asyncio.run(self._serve(modes))
            self.logger.debug("Proxy thread stopped")
        except (Exception, SystemExit) as e:
            self.logger.error("Proxy thread error", error=str(e))
            self._startup_error = e
        finally:
            self._ready.set()

    async def _serve(self, modes: List[str]):
        opts = options.Options(
            listen_host=self.config.listen_host,
            mode=modes,
            # Certificate directory
            confdir=str(self.config.confdir),
            # SSL/TLS options
            ssl_insecure=self.config.ssl_insecure,
        )

        master = dump.DumpMaster(
            opts,
            with_termlog=False,
            with_dumper=False
        )

        # Registered by the proxyserver addon, so it only exists once addons are loaded
        opts.update(connection_strategy=self.config.connection_strategy)

        # errorcheck exits the process on startup errors
        errorcheck = master.addons.get("errorcheck")
        if errorcheck is not None:
            master.addons.remove(errorcheck)

        master.addons.add(self.router)
        install_noise_filter()

        self._loop = asyncio.get_running_loop()
        self._master = master
        await master.run()

    async def _apply_modes(self):
        self._master.options.update(mode=self._modes())

    async def _listener_state(self, port: int) -> Tuple[bool, Optional[str]]:
        """Wait for pending server updates, then report the listener's state"""
        proxyserver = self._master.addons.get("proxyserver")
        # Let configure()'s scheduled update acquire the servers lock
        await asyncio.sleep(0)
        while proxyserver.servers.is_updating:
            await asyncio.sleep(LISTENER_POLL_SECONDS)

        try:
            instance = proxyserver.servers[listen_mode(port)]
        except KeyError:
            return False, "listener was not created"
        if instance.last_exception is not None:
            return False, str(instance.last_exception)
        return instance.is_running, None


_shared_host: Optional[ProxyHost] = None
_shared_host_lock = threading.Lock()


def get_host(config) -> ProxyHost:
    """Return the process-wide proxy host, creating it on first use"""
    global _shared_host
    with _shared_host_lock:
        if _shared_host is None:
            _shared_host = ProxyHost(config)
        return _shared_host


class ProxyEngine:
    """
    One capture listener

    Provides methods to start, stop, and monitor the listener, and to
    control requests held by its intercept.
    """

    def __init__(
        self,
        config,
        sink: EventSink,
        session_id: str = "default",
        allocator: Optional[PortAllocator] = None,
        on_started: Optional[Callable[[int], None]] = None,
        host: Optional[ProxyHost] = None,
    ):
        """
        Initialize the engine

        Args:
            config: ProxyConfig section of the application configuration
            sink: Receives every captured-traffic event
            session_id: Session this engine belongs to
            allocator: Port prober used to verify the listener
            on_started: Called with the bound port once listening
            host: Proxy host to run on (process-wide host by default)
        """
        self.config = config
        self.sink = sink
        self.session_id = session_id
        self.allocator = allocator or PortAllocator(host=config.listen_host, max_port=config.max_port)
        self.on_started = on_started
        self.host = host or get_host(config)
        self.logger = logger.bind(component="proxy_engine", session=session_id)

        self.intercept = InterceptController(
            dispatch=self.host.call_soon,
            drop_action=config.drop_action,
            drop_status_code=config.drop_status_code,
            hold_timeout=config.hold_timeout_seconds,
            hold_timeout_action=config.hold_timeout_action,
            release_on_disable=config.release_held_on_disable,
        )
        self.addon = CaptureAddon(sink, intercept=self.intercept, session_id=session_id)

        self.port: Optional[int] = None
        self._listening = False
        self._lock = threading.RLock()

    @property
    def listening(self) -> bool:
        return self._listening

    def start(self, port: Optional[int] = None) -> int:
        """
        Start listening

        Args:
            port: Port to bind (defaults to the configured base port)

        Returns:
            The bound port

        Raises:
            ProxyStartError: if the listener did not come up
        """
        with self._lock:
            if self._listening:
                self.logger.warning("Proxy engine already running", port=self.port)
                return self.port

            port = port or self.config.base_port
            try:
                self.host.add_listener(port, self.addon)
            except ProxyStartError as e:
                self.logger.error("Failed to start proxy engine", port=port, error=e.reason)
                raise ProxyStartError(port, e.reason) from e

            if self.allocator.is_port_available(port):
                self.host.remove_listener(port)
                self.logger.error("Proxy engine is not holding its port", port=port)
                raise ProxyStartError(port, "port is not bound after startup")

            self.port = port
            self._listening = True
            self.logger.info(
                "Proxy engine started",
                host=self.config.listen_host,
                port=port,
                ca_cert=str(self.config.confdir)
            )

        if self.on_started:
            try:
                self.on_started(port)
            except Exception as e:
                self.logger.error("on_started callback failed", error=str(e))
        return port

    def stop(self):
        """
        Stop listening

        Held requests and in-flight exchanges are abandoned without events.
        """
        with self._lock:
            if not self._listening:
                self.logger.debug("Proxy engine not running")
                return

            self.logger.info("Stopping proxy engine...", port=self.port)
            self.intercept.clear()
            try:
                self.host.remove_listener(self.port)
            finally:
                self.addon.reset()
                self._listening = False
                self.logger.info("Proxy engine stopped", port=self.port)

    def set_intercept(self, enabled: bool):
        self.intercept.set_enabled(enabled)

    def forward_request(self, request_id: str) -> bool:
        return self.intercept.forward(request_id)

    def drop_request(self, request_id: str) -> bool:
        return self.intercept.drop(request_id)

    def has_request(self, request_id: str) -> bool:
        return request_id in self.intercept

    def get_status(self) -> dict:
        """
        Get engine status

        Returns:
            Dictionary with status information
        """
        return {
            "session": self.session_id,
            "running": self._listening,
            "host": self.config.listen_host,
            "port": self.port,
            "intercept": self.intercept.enabled,
            "held_requests": self.intercept.pending_ids(),
            "statistics": self.addon.get_stats(),
        }

    async def start_async(self, port: Optional[int] = None) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.start, port)

    async def stop_async(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.stop)

    def __enter__(self):
        """Context manager entry"""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.stop()
        return False
