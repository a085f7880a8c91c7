"""
Transport Noise Classification

Intercepting arbitrary client software produces a steady stream of peer
resets and abrupt disconnects, mostly around TLS teardown. These are a
normal side effect of sitting in the middle, not failures. Everything that
reports a transport error goes through ``is_expected_noise`` first.
"""

import errno
import logging
from typing import Tuple

NOISE_ERRNOS = frozenset({errno.ECONNRESET, errno.EPIPE, errno.ECONNABORTED})
NOISE_CODES = frozenset({"ECONNRESET", "EPIPE", "ECONNABORTED"})

NOISE_MARKERS: Tuple[str, ...] = (
    "connection reset",
    "socket hang up",
    "client disconnected",
    "server disconnected",
    "disconnected during the handshake",
    "peer closed connection",
    "broken pipe",
    "connection aborted",
)


def is_expected_noise(err) -> bool:
    """
    Return True for errors that are a normal consequence of interception

    Accepts exceptions, mitmproxy ``flow.Error`` objects (``.msg``) or plain
    strings.
    """
    if err is None:
        return False

    if isinstance(err, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return True
    if isinstance(err, OSError) and err.errno in NOISE_ERRNOS:
        return True

    code = getattr(err, "code", None)
    if isinstance(code, str) and code.upper() in NOISE_CODES:
        return True

    message = err if isinstance(err, str) else getattr(err, "msg", None) or str(err)
    message = message.lower()
    return any(marker in message for marker in NOISE_MARKERS)


class TransportNoiseFilter(logging.Filter):
    """
    Drops expected-noise records emitted by the interception transport

    Attach it to handlers (or to the transport's loggers); records from
    other loggers pass untouched.
    """

    def __init__(self, prefixes: Tuple[str, ...] = ("mitmproxy",)):
        super().__init__()
        self.prefixes = prefixes

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith(self.prefixes):
            return True
        if record.exc_info and is_expected_noise(record.exc_info[1]):
            return False
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)
        return not is_expected_noise(message)


TRANSPORT_LOGGERS = (
    "mitmproxy.proxy.server",
    "mitmproxy.proxy.layers",
    "mitmproxy.proxy",
    "mitmproxy",
)


def install_noise_filter(logger_names: Tuple[str, ...] = TRANSPORT_LOGGERS) -> TransportNoiseFilter:
    """Attach one shared filter to the transport's loggers (idempotent)"""
    for name in logger_names:
        target = logging.getLogger(name)
        for existing in target.filters:
            if isinstance(existing, TransportNoiseFilter):
                break
        else:
            target.addFilter(_SHARED_FILTER)
    return _SHARED_FILTER


_SHARED_FILTER = TransportNoiseFilter()
