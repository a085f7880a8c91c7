"""
API Routes for Capture Proxy Control

Provides endpoints for:
- Default proxy control
- Per-session proxy lifecycle
- Intercept toggling and held-request resolution
- System proxy settings
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from typing import Optional
import structlog

from trafficlens.proxy.exceptions import PortAllocationFailed, ProxyStartError
from trafficlens.proxy.ports import DEFAULT_BASE_PORT
from trafficlens.proxy.registry import SessionRegistry
from trafficlens.proxy.system import SystemProxyManager

logger = structlog.get_logger()

router = APIRouter(prefix="/api/proxy", tags=["proxy"])


class StartProxyRequest(BaseModel):
    port: int = Field(DEFAULT_BASE_PORT, ge=1, le=65535)


class CreateSessionRequest(BaseModel):
    start_port: Optional[int] = Field(None, ge=1, le=65535)


class InterceptRequest(BaseModel):
    enabled: bool


class SystemProxyRequest(BaseModel):
    url: str = Field(..., min_length=1)
    type: str = "http"


def get_registry(request: Request) -> SessionRegistry:
    """Dependency to get the session registry"""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Proxy registry not initialized")
    return registry


def get_system_proxy(request: Request) -> SystemProxyManager:
    """Dependency to get the system proxy manager"""
    manager = getattr(request.app.state, "system_proxy", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="System proxy manager not initialized")
    return manager


# Default Proxy Endpoints

@router.post("/start")
async def start_proxy(
    body: Optional[StartProxyRequest] = None,
    registry: SessionRegistry = Depends(get_registry)
):
    """Start the default capture proxy"""
    requested = body.port if body else DEFAULT_BASE_PORT
    try:
        port = await registry.start_default_async(requested)
    except (PortAllocationFailed, ProxyStartError) as e:
        logger.error("Failed to start proxy", port=requested, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))

    return {"status": "started", "port": port, "requested_port": requested}


@router.post("/stop")
async def stop_proxy(registry: SessionRegistry = Depends(get_registry)):
    """Stop the default capture proxy"""
    stopped = await registry.stop_default_async()
    return {"status": "stopped" if stopped else "not_running", "stopped": stopped}


@router.get("/status")
async def proxy_status(
    registry: SessionRegistry = Depends(get_registry),
    system_proxy: SystemProxyManager = Depends(get_system_proxy)
):
    """Get status of every session and of the system proxy"""
    status = registry.get_status()
    status["system_proxy"] = system_proxy.get_status()
    return status


# Session Endpoints

@router.get("/sessions")
async def list_sessions(registry: SessionRegistry = Depends(get_registry)):
    """List running proxy sessions"""
    sessions = [session.to_dict() for session in registry.list_sessions()]
    return {"sessions": sessions, "count": len(sessions)}


@router.delete("/sessions")
async def stop_all_sessions(registry: SessionRegistry = Depends(get_registry)):
    """Stop every proxy session"""
    count = len(registry.list_sessions())
    await registry.stop_all_async()
    return {"status": "stopped", "count": count}


@router.post("/sessions/{session_id}")
async def create_session(
    session_id: str,
    body: Optional[CreateSessionRequest] = None,
    registry: SessionRegistry = Depends(get_registry)
):
    """Start a proxy session (returns the existing port if already running)"""
    try:
        port = await registry.create_session_async(session_id, body.start_port if body else None)
    except (PortAllocationFailed, ProxyStartError) as e:
        logger.error("Failed to create session", session=session_id, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))

    return {"session": session_id, "port": port}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Get one session's details and statistics"""
    session = registry.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    details = session.to_dict()
    details["statistics"] = session.engine.addon.get_stats()
    return details


@router.delete("/sessions/{session_id}")
async def stop_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Stop one proxy session"""
    if not await registry.stop_session_async(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session": session_id, "status": "stopped"}


@router.post("/sessions/{session_id}/intercept")
async def set_intercept(
    session_id: str,
    body: InterceptRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    """Enable or disable request interception for a session"""
    if not registry.set_intercept(session_id, body.enabled):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session": session_id, "intercept": body.enabled}


# Held Request Endpoints

@router.post("/requests/{request_id}/forward")
async def forward_request(request_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Release a held request to its origin"""
    if not registry.forward_request(request_id):
        raise HTTPException(status_code=404, detail="Request is not held")
    return {"id": request_id, "status": "forwarded"}


@router.post("/requests/{request_id}/drop")
async def drop_request(request_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Terminate a held request without contacting the origin"""
    if not registry.drop_request(request_id):
        raise HTTPException(status_code=404, detail="Request is not held")
    return {"id": request_id, "status": "dropped"}


# System Proxy Endpoints

@router.post("/system/test")
async def test_system_proxy(
    body: SystemProxyRequest,
    system_proxy: SystemProxyManager = Depends(get_system_proxy)
):
    """Check that an upstream proxy answers"""
    return await system_proxy.test_proxy(body.model_dump())


@router.post("/system/set")
async def set_system_proxy(
    body: SystemProxyRequest,
    system_proxy: SystemProxyManager = Depends(get_system_proxy)
):
    """Route this process's outbound traffic through an upstream proxy"""
    return system_proxy.set_proxy(body.model_dump())


@router.post("/system/clear")
async def clear_system_proxy(system_proxy: SystemProxyManager = Depends(get_system_proxy)):
    """Remove the upstream proxy"""
    return system_proxy.clear_proxy()
