"""
HTTP/HTTPS Traffic Capture Proxy

This module provides per-session HTTP/HTTPS interception using mitmproxy,
streaming every captured request/response pair to the UI as events.

Components:
- Port Allocator: finds bindable listener ports
- Content Decoder: turns response bodies into previewable text
- Capture Addon: mitmproxy hooks that build exchanges and emit events
- Intercept Controller: holds, forwards and drops requests
- Proxy Engine: one capture listener on the shared mitmproxy host
- Session Registry: one engine per UI session
- System Proxy Manager: process-wide outbound proxy settings
"""

from .addon import CaptureAddon
from .decoder import DecodeResult, decode_body
from .engine import ProxyEngine, ProxyHost
from .events import CallbackEventSink, EventSink, FanoutEventSink, QueueEventSink
from .exceptions import NoPortAvailable, PortAllocationFailed, ProxyError, ProxyStartError
from .intercept import InterceptController
from .ports import PortAllocator, find_available_port
from .registry import DEFAULT_SESSION_ID, ProxySession, SessionRegistry
from .system import SystemProxyManager

__all__ = [
    "CaptureAddon",
    "DecodeResult",
    "decode_body",
    "ProxyEngine",
    "ProxyHost",
    "EventSink",
    "CallbackEventSink",
    "FanoutEventSink",
    "QueueEventSink",
    "ProxyError",
    "NoPortAvailable",
    "PortAllocationFailed",
    "ProxyStartError",
    "InterceptController",
    "PortAllocator",
    "find_available_port",
    "DEFAULT_SESSION_ID",
    "ProxySession",
    "SessionRegistry",
    "SystemProxyManager",
]
