"""
Port Allocation for Proxy Listeners

Finds the lowest bindable TCP port at or above a starting value by
binding a throwaway listener to each candidate and releasing it.
"""

import asyncio
import socket
from typing import Optional

import structlog

from .exceptions import NoPortAvailable

logger = structlog.get_logger()

DEFAULT_BASE_PORT = 8081
MAX_PORT = 65535


class PortAllocator:
    """
    Probes ports by binding them

    The scan is linear and stops at the first port that can be bound, so the
    result only depends on the starting port and on which ports are taken.
    """

    def __init__(self, host: str = "127.0.0.1", max_port: int = MAX_PORT):
        self.host = host
        self.max_port = max_port
        self.logger = logger.bind(component="port_allocator")

    def _family(self) -> socket.AddressFamily:
        return socket.AF_INET6 if ":" in self.host else socket.AF_INET

    def is_port_available(self, port: int) -> bool:
        """Return True if a listener can be bound to ``port`` right now"""
        with socket.socket(self._family(), socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.host, port))
                sock.listen(1)
            except OSError:
                return False
        return True

    def find_available_port(self, start_port: int = DEFAULT_BASE_PORT) -> int:
        """
        Find the first bindable port in ``[start_port, max_port]``

        Raises:
            NoPortAvailable: if every port in the range is taken or refused
        """
        if start_port < 1 or start_port > self.max_port:
            raise NoPortAvailable(start_port, self.max_port)

        for port in range(start_port, self.max_port + 1):
            if self.is_port_available(port):
                if port != start_port:
                    self.logger.debug("Port substituted", requested=start_port, port=port)
                return port

        self.logger.error("Port range exhausted", start_port=start_port, max_port=self.max_port)
        raise NoPortAvailable(start_port, self.max_port)

    async def find_available_port_async(self, start_port: int = DEFAULT_BASE_PORT) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.find_available_port, start_port)


def find_available_port(
    start_port: int = DEFAULT_BASE_PORT,
    host: str = "127.0.0.1",
    max_port: Optional[int] = None
) -> int:
    """Convenience wrapper around :class:`PortAllocator`"""
    allocator = PortAllocator(host=host, max_port=max_port or MAX_PORT)
    return allocator.find_available_port(start_port)
