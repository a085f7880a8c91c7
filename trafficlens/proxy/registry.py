"""
Proxy Session Registry

Keeps one ProxyEngine per named session (one per editor tab in the UI),
hands out ports, and routes intercept control calls to the engine that
holds a request.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import structlog

from .engine import ProxyEngine
from .events import EventSink
from .exceptions import NoPortAvailable, PortAllocationFailed, ProxyStartError
from .ports import DEFAULT_BASE_PORT, PortAllocator

logger = structlog.get_logger()

DEFAULT_SESSION_ID = "default"


@dataclass
class ProxySession:
    id: str
    port: int
    engine: ProxyEngine
    created_at: float = field(default_factory=time.time)

    @property
    def intercept_enabled(self) -> bool:
        return self.engine.intercept.enabled

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "port": self.port,
            "intercept": self.intercept_enabled,
            "created_at": self.created_at,
            "held_requests": self.engine.intercept.pending_ids(),
        }


class SessionRegistry:
    """
    Maps session ids to running engines

    Call init() before use and shutdown() when the application exits.
    Session creation and teardown are serialised; lookups are not blocked
    by a slow engine start.
    """

    def __init__(
        self,
        config,
        sink: EventSink,
        allocator: Optional[PortAllocator] = None,
        engine_factory: Callable[..., ProxyEngine] = ProxyEngine,
    ):
        """
        Initialize the registry

        Args:
            config: ProxyConfig section of the application configuration
            sink: Shared event sink every engine emits into
            allocator: Port allocator (built from config by default)
            engine_factory: Engine constructor, replaceable in tests
        """
        self.config = config
        self.sink = sink
        self.allocator = allocator or PortAllocator(host=config.listen_host, max_port=config.max_port)
        self.engine_factory = engine_factory
        self.logger = logger.bind(component="session_registry")

        self._sessions: Dict[str, ProxySession] = {}
        self._create_lock = threading.RLock()
        self._lock = threading.Lock()
        self._initialized = False

    def init(self):
        if self._initialized:
            return
        self._initialized = True
        self.logger.info("Session registry initialized", base_port=self.config.base_port)

    def shutdown(self):
        if not self._initialized:
            return
        self.stop_all()
        self._initialized = False
        self.logger.info("Session registry shut down")

    def create_session(self, session_id: str, start_port: Optional[int] = None) -> int:
        """
        Start a capture engine for ``session_id``

        Idempotent: an existing session's port is returned unchanged.

        Raises:
            PortAllocationFailed: if no port could be bound for the session
        """
        with self._create_lock:
            existing = self.get_session(session_id)
            if existing is not None:
                return existing.port

            next_port = start_port or self.config.base_port
            last_error: Optional[Exception] = None

            for attempt in range(1, self.config.start_attempts + 1):
                try:
                    port = self.allocator.find_available_port(next_port)
                except NoPortAvailable as e:
                    self.logger.error("No port for session", session=session_id, error=str(e))
                    raise PortAllocationFailed(session_id, str(e)) from e

                engine = self.engine_factory(
                    self.config,
                    self.sink,
                    session_id=session_id,
                    allocator=self.allocator,
                )
                try:
                    bound = engine.start(port)
                except ProxyStartError as e:
                    # Port was taken between the probe and the bind
                    self.logger.warning(
                        "Engine start failed, retrying",
                        session=session_id,
                        port=port,
                        attempt=attempt,
                        error=str(e)
                    )
                    last_error = e
                    next_port = port + 1
                    continue

                session = ProxySession(id=session_id, port=bound, engine=engine)
                with self._lock:
                    self._sessions[session_id] = session

                self.logger.info("Session created", session=session_id, port=bound)
                return bound

            raise PortAllocationFailed(session_id, str(last_error) if last_error else None)

    def stop_session(self, session_id: str) -> bool:
        with self._create_lock:
            with self._lock:
                session = self._sessions.pop(session_id, None)
            if session is None:
                return False

            try:
                session.engine.stop()
            except Exception as e:
                self.logger.error("Error stopping session", session=session_id, error=str(e))

            self.logger.info("Session stopped", session=session_id, port=session.port)
            return True

    def stop_all(self):
        for session_id in [session.id for session in self.list_sessions()]:
            self.stop_session(session_id)

    def get_session(self, session_id: str) -> Optional[ProxySession]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self) -> List[ProxySession]:
        with self._lock:
            return list(self._sessions.values())

    def set_intercept(self, session_id: str, enabled: bool) -> bool:
        """Toggle intercept for one session; False if the session is unknown"""
        session = self.get_session(session_id)
        if session is None:
            self.logger.debug("Intercept toggle for unknown session", session=session_id)
            return False
        session.engine.set_intercept(enabled)
        return True

    def forward_request(self, request_id: str) -> bool:
        """Release a held request in whichever session holds it"""
        for session in self.list_sessions():
            if session.engine.forward_request(request_id):
                return True
        return False

    def drop_request(self, request_id: str) -> bool:
        """Terminate a held request in whichever session holds it"""
        for session in self.list_sessions():
            if session.engine.drop_request(request_id):
                return True
        return False

    def start_default(self, port: int = DEFAULT_BASE_PORT) -> int:
        """
        Start the single default session

        If ``port`` is taken the allocator picks the next free one; the
        returned port is the one actually bound.
        """
        return self.create_session(DEFAULT_SESSION_ID, start_port=port)

    def stop_default(self) -> bool:
        return self.stop_session(DEFAULT_SESSION_ID)

    def get_status(self) -> dict:
        sessions = self.list_sessions()
        return {
            "initialized": self._initialized,
            "session_count": len(sessions),
            "sessions": {session.id: session.engine.get_status() for session in sessions},
        }

    async def create_session_async(self, session_id: str, start_port: Optional[int] = None) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.create_session, session_id, start_port)

    async def stop_session_async(self, session_id: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.stop_session, session_id)

    async def stop_all_async(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.stop_all)

    async def start_default_async(self, port: int = DEFAULT_BASE_PORT) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.start_default, port)

    async def stop_default_async(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.stop_default)

    async def shutdown_async(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.shutdown)
