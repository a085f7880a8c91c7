"""
WebSocket Manager for Real-Time Updates
Handles WebSocket connections and pushes captured-traffic events to the UI
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
import structlog
from fastapi import WebSocket, WebSocketDisconnect

logger = structlog.get_logger()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebSocketManager:
    """
    Manages WebSocket connections and broadcasts messages

    Also the EventSink every proxy engine emits into. Engines run on their
    own threads, so emit() hands each event to the API event loop bound by
    bind_loop().
    """

    def __init__(self):
        # Map of session_id -> Set of WebSocket connections
        self.session_connections: Dict[str, Set[WebSocket]] = {}
        # Global connections (not filtered by session)
        self.global_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    def emit(self, channel: str, payload: Dict[str, Any], session_id: Optional[str] = None) -> None:
        """Queue a captured-traffic event for broadcast (safe from any thread)"""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("WebSocket event dropped, no event loop bound", channel=channel)
            return

        message = {
            "type": channel,
            "session": session_id,
            "data": payload,
            "timestamp": _timestamp()
        }

        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is loop:
            loop.create_task(self.publish(message, session_id))
        else:
            asyncio.run_coroutine_threadsafe(self.publish(message, session_id), loop)

    async def publish(self, message: dict, session_id: Optional[str] = None):
        if session_id is not None:
            await self.broadcast_to_session(session_id, message)
        await self.broadcast_global(message)

    async def connect(self, websocket: WebSocket, session_id: Optional[str] = None):
        """Register a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            if session_id is not None:
                self.session_connections.setdefault(session_id, set()).add(websocket)
                logger.info("WebSocket connected", session=session_id,
                            total_connections=len(self.session_connections[session_id]))
            else:
                self.global_connections.add(websocket)
                logger.info("Global WebSocket connected",
                            total_connections=len(self.global_connections))

        # Send connection established message
        await self.send_personal_message(
            websocket,
            {
                "type": "connection_established",
                "session": session_id,
                "data": {
                    "session": session_id,
                    "message": "WebSocket connection established"
                },
                "timestamp": _timestamp()
            }
        )

    async def disconnect(self, websocket: WebSocket, session_id: Optional[str] = None):
        """Unregister a WebSocket connection"""
        async with self._lock:
            if session_id is not None:
                if session_id in self.session_connections:
                    self.session_connections[session_id].discard(websocket)
                    if not self.session_connections[session_id]:
                        del self.session_connections[session_id]
                    logger.info("WebSocket disconnected", session=session_id)
            else:
                self.global_connections.discard(websocket)
                logger.info("Global WebSocket disconnected")

    async def send_personal_message(self, websocket: WebSocket, message: dict):
        """Send a message to a specific WebSocket connection"""
        try:
            await websocket.send_text(json.dumps(message))
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    async def broadcast_to_session(self, session_id: str, message: dict):
        """Send a message to every subscriber of one session"""
        async with self._lock:
            subscribers = set(self.session_connections.get(session_id, ()))
        gone = await self._send_all(subscribers, json.dumps(message))
        if gone:
            async with self._lock:
                self.session_connections.get(session_id, set()).difference_update(gone)

    async def broadcast_global(self, message: dict):
        """Send a message to every subscriber of all sessions"""
        async with self._lock:
            subscribers = set(self.global_connections)
        gone = await self._send_all(subscribers, json.dumps(message))
        if gone:
            async with self._lock:
                self.global_connections.difference_update(gone)

    async def _send_all(self, subscribers: Set[WebSocket], text: str) -> Set[WebSocket]:
        """Send ``text`` to each subscriber; returns the ones that failed"""
        gone = set()
        for websocket in subscribers:
            try:
                await websocket.send_text(text)
            except WebSocketDisconnect:
                gone.add(websocket)
            except Exception as e:
                logger.warning("Dropping WebSocket subscriber", error=str(e))
                gone.add(websocket)
        return gone

    def get_connection_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self.session_connections.get(session_id, ()))
        return len(self.global_connections) + sum(
            len(subscribers) for subscribers in self.session_connections.values()
        )
