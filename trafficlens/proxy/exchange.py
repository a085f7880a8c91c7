"""
Captured Exchanges

One Exchange per intercepted request/response pair. Bodies are collected
chunk by chunk in a BodyAccumulator and only decoded once complete.

The four UI events and their field names are a wire contract shared with
the inspector front-end; keep them byte-for-byte stable.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .decoder import DecodeResult

REQUEST = "proxy:request"
REQUEST_BODY = "proxy:request-body"
RESPONSE = "proxy:response"
RESPONSE_BODY = "proxy:response-body"

EVENT_ORDER = (REQUEST, REQUEST_BODY, RESPONSE, RESPONSE_BODY)


def now_ms() -> int:
    return int(time.time() * 1000)


def format_size(size: int) -> str:
    """Human readable body size, e.g. ``512 B`` or ``1.2 KB``"""
    if size < 1024:
        return f"{size} B"
    return f"{size / 1024:.1f} KB"


def snapshot_headers(headers) -> Dict[str, Any]:
    """
    Copy mitmproxy headers into a plain dict

    Names are lower-cased; repeated Set-Cookie headers are kept as a list.
    """
    snapshot: Dict[str, Any] = {}
    for name in headers.keys():
        key = name.lower()
        if key == "set-cookie":
            snapshot[key] = headers.get_all(name)
        else:
            snapshot[key] = headers[name]
    return snapshot


class BodyAccumulator:
    """Collects body chunks in arrival order until finalized"""

    def __init__(self):
        self._chunks: List[bytes] = []
        self._size = 0
        self._body: Optional[bytes] = None

    @property
    def closed(self) -> bool:
        return self._body is not None

    @property
    def size(self) -> int:
        return self._size

    def append(self, chunk: bytes):
        if self.closed:
            raise RuntimeError("Body already finalized")
        if chunk:
            self._chunks.append(bytes(chunk))
            self._size += len(chunk)

    def finalize(self) -> bytes:
        """Join the chunks; later calls return the same bytes"""
        if self._body is None:
            self._body = b"".join(self._chunks)
            self._chunks = []
        return self._body


@dataclass
class Exchange:
    """State for one request/response pair inside a single engine"""

    request_id: str
    method: str
    url: str
    request_headers: Dict[str, Any] = field(default_factory=dict)
    held: bool = False
    request_body: BodyAccumulator = field(default_factory=BodyAccumulator)
    request_streamed: bool = False
    status_code: int = 0
    response_headers: Dict[str, Any] = field(default_factory=dict)
    response_body: BodyAccumulator = field(default_factory=BodyAccumulator)
    response_streamed: bool = False
    content_encoding: Optional[str] = None
    content_type: str = ""
    decoded: Optional[DecodeResult] = None
    size_bytes: int = 0
    emitted: Set[str] = field(default_factory=set)

    def claim(self, event: str) -> bool:
        """
        Reserve the right to emit ``event``

        Each event goes out at most once, and never after an event that
        comes later in EVENT_ORDER.
        """
        if event in self.emitted:
            return False
        position = EVENT_ORDER.index(event)
        if any(EVENT_ORDER.index(done) > position for done in self.emitted):
            return False
        self.emitted.add(event)
        return True

    def request_event(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "method": self.method,
            "url": self.url,
            "headers": self.request_headers,
            "timestamp": now_ms(),
            "isIntercepted": self.held,
        }

    def request_body_event(self, body: str) -> Dict[str, Any]:
        return {"id": self.request_id, "body": body}

    def response_event(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "url": self.url,
            "statusCode": self.status_code,
            "headers": self.response_headers,
            "timestamp": now_ms(),
        }

    def response_body_event(self) -> Dict[str, Any]:
        decoded = self.decoded or DecodeResult(text="")
        return {
            "id": self.request_id,
            "body": decoded.text,
            "size": format_size(self.size_bytes),
            "isBinary": decoded.is_binary,
            "contentType": self.content_type,
        }
