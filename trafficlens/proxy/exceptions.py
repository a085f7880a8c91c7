"""
Exceptions raised by the capture proxy

Only structurally invalid control calls surface as exceptions. Transport
noise, decode failures and unknown session/request ids are handled where
they occur and never reach the caller.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for capture proxy failures"""


class NoPortAvailable(ProxyError):
    """No TCP port in the scanned range could be bound"""

    def __init__(self, start_port: int, max_port: int):
        self.start_port = start_port
        self.max_port = max_port
        super().__init__(f"No available ports found in range {start_port}-{max_port}")


class PortAllocationFailed(ProxyError):
    """A session could not obtain a listening port"""

    def __init__(self, session_id: str, reason: Optional[str] = None):
        self.session_id = session_id
        message = f"Could not allocate a port for session '{session_id}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProxyStartError(ProxyError):
    """The mitmproxy listener did not come up"""

    def __init__(self, port: int, reason: str):
        self.port = port
        self.reason = reason
        super().__init__(f"Proxy failed to start on port {port}: {reason}")
