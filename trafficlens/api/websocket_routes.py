"""
WebSocket API Routes
Provides the WebSocket endpoint the UI subscribes to for captured traffic
"""

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, Query
from typing import Optional
import structlog

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    session: Optional[str] = Query(None, description="Filter events by proxy session")
):
    """
    WebSocket endpoint for captured traffic

    Query Parameters:
    - session (optional): Subscribe to one proxy session only
                          If not provided, receives events from every session

    Message Types Sent:
    - connection_established: Initial connection confirmation
    - proxy:request: Request line and headers captured
    - proxy:request-body: Request body captured
    - proxy:response: Response status and headers captured
    - proxy:response-body: Decoded response body
    """
    ws_manager = websocket.app.state.ws_manager
    await ws_manager.connect(websocket, session)

    try:
        while True:
            # Keep the connection alive; clients don't send commands here
            data = await websocket.receive_text()
            logger.debug("Received WebSocket message", data=data, session=session)

    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket, session)
        logger.info("WebSocket client disconnected", session=session)


@router.get("/ws/status")
async def websocket_status(request: Request):
    """Get WebSocket connection statistics"""
    ws_manager = request.app.state.ws_manager

    session_stats = {
        session_id: len(connections)
        for session_id, connections in ws_manager.session_connections.items()
    }

    return {
        "total_connections": ws_manager.get_connection_count(),
        "global_connections": len(ws_manager.global_connections),
        "session_connections": session_stats
    }
