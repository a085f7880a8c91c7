"""
Response Body Decoder

Turns a captured response body into something an operator can read.

Precedence matters and is fixed:
1. An explicit Content-Encoding header naming a known codec wins
2. Without a header, gzip magic bytes still trigger gunzip (servers that
   forget the header)
3. Otherwise a NUL byte in the first 1024 bytes marks the payload binary
   (returned base64-encoded)
4. Everything else is UTF-8 text

Decoding never raises: failures become placeholder strings so the exchange
is still shown.
"""

import base64
import gzip
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import brotli
import zstandard

GZIP_MAGIC = b"\x1f\x8b"
BINARY_SNIFF_BYTES = 1024

ERROR_PREFIX = "[TrafficLens Error]"
INFO_PREFIX = "[TrafficLens Info]"


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one response body"""

    text: str
    is_binary: bool = False
    diagnostic: Optional[str] = None


def _gunzip(data: bytes) -> bytes:
    return gzip.decompress(data)


def _inflate(data: bytes) -> bytes:
    # Some servers send raw deflate streams without the zlib wrapper
    try:
        return zlib.decompress(data)
    except zlib.error:
        return zlib.decompress(data, -zlib.MAX_WBITS)


def _unbrotli(data: bytes) -> bytes:
    return brotli.decompress(data)


def _unzstd(data: bytes) -> bytes:
    # decompressobj copes with frames that omit the content size
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)


CODECS: Dict[str, Callable[[bytes], bytes]] = {
    "gzip": _gunzip,
    "x-gzip": _gunzip,
    "deflate": _inflate,
    "br": _unbrotli,
    "zstd": _unzstd,
}


def parse_content_encoding(header: Optional[str]) -> List[str]:
    """
    Split a Content-Encoding header into codec tokens

    Returns an empty list for a missing header or plain ``identity``.
    """
    if not header:
        return []
    tokens = [token.strip().lower() for token in header.split(",")]
    return [token for token in tokens if token and token != "identity"]


def _as_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def looks_binary(data: bytes) -> bool:
    return b"\x00" in data[:BINARY_SNIFF_BYTES]


def decode_body(body: bytes, content_encoding: Optional[str] = None) -> DecodeResult:
    """
    Decode a response body for preview

    Args:
        body: Raw bytes as received from the origin
        content_encoding: Value of the Content-Encoding header, if any

    Returns:
        DecodeResult with readable text, a base64 payload for binary bodies,
        or a placeholder carrying a diagnostic
    """
    codecs = parse_content_encoding(content_encoding)

    if codecs:
        unsupported = [codec for codec in codecs if codec not in CODECS]
        if unsupported:
            label = content_encoding.strip().lower()
            return DecodeResult(
                text=f"{INFO_PREFIX} Content encoded with '{label}' which is currently not supported for preview.",
                diagnostic=f"unsupported encoding: {label}",
            )

        data = body
        # Encodings are listed in the order they were applied
        for codec in reversed(codecs):
            try:
                data = CODECS[codec](data)
            except Exception as e:
                return DecodeResult(
                    text=f"{ERROR_PREFIX} Failed to decompress {codec} content: {e}",
                    diagnostic=str(e),
                )
        return DecodeResult(text=_as_text(data))

    if len(body) > 2 and body[:2] == GZIP_MAGIC:
        try:
            return DecodeResult(text=_as_text(_gunzip(body)))
        except Exception as e:
            return DecodeResult(
                text=f"{ERROR_PREFIX} Detected GZIP magic bytes but failed to decompress.\nError: {e}",
                diagnostic=str(e),
            )

    if looks_binary(body):
        return DecodeResult(text=base64.b64encode(body).decode("ascii"), is_binary=True)

    return DecodeResult(text=_as_text(body))


def decode_failure(content_encoding: Optional[str], error: BaseException) -> DecodeResult:
    """Placeholder used when decoding blew up outside the codec guards"""
    encoding = content_encoding or "unknown"
    return DecodeResult(
        text=f"{ERROR_PREFIX} Failed to decode response body.\nEncoding: {encoding}\nError: {error}",
        diagnostic=str(error),
    )
