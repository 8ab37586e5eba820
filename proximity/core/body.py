"""
Inbound body capture.

A request body stream yields its bytes exactly once. The body is drained into
memory up front and two independent readers are handed out: one is forwarded
upstream, the other is kept for diagnostics.
"""

from __future__ import annotations

import io
from typing import BinaryIO, Iterable, Optional, Tuple

from proximity.core.errors import BodyReadError

# Upper bound on a single chunk-size line, including extensions.
_MAX_CHUNK_LINE = 4096


def _header(headers: Iterable[Tuple[str, str]], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size) if size else b""
    if len(data) != size:
        raise BodyReadError(f"body truncated: expected {size} bytes, got {len(data)}")
    return data


def _read_chunked(stream: BinaryIO) -> bytes:
    """Decode a ``Transfer-Encoding: chunked`` body, discarding trailers."""
    buf = io.BytesIO()
    while True:
        line = stream.readline(_MAX_CHUNK_LINE)
        if not line.endswith(b"\n"):
            raise BodyReadError("malformed chunk size line")
        size_text = line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError:
            raise BodyReadError(f"invalid chunk size {size_text!r}") from None
        if size < 0:
            raise BodyReadError(f"invalid chunk size {size_text!r}")
        if size == 0:
            break
        buf.write(_read_exact(stream, size))
        if _read_exact(stream, 2) != b"\r\n":
            raise BodyReadError("chunk not terminated by CRLF")

    # Trailer section ends with an empty line.
    while True:
        line = stream.readline(_MAX_CHUNK_LINE)
        if not line:
            raise BodyReadError("body truncated in chunk trailer")
        if line in (b"\r\n", b"\n"):
            break
    return buf.getvalue()


def read_body(stream: BinaryIO, headers: Iterable[Tuple[str, str]]) -> bytes:
    """Drain the whole inbound body according to its framing headers."""
    headers = list(headers)
    try:
        encoding = _header(headers, "Transfer-Encoding")
        if encoding and encoding.strip().lower().endswith("chunked"):
            return _read_chunked(stream)

        length = _header(headers, "Content-Length")
        if length is None:
            return b""
        try:
            size = int(length.strip())
        except ValueError:
            raise BodyReadError(f"invalid Content-Length {length!r}") from None
        if size < 0:
            raise BodyReadError(f"invalid Content-Length {length!r}")
        return _read_exact(stream, size)
    except OSError as e:
        raise BodyReadError(f"failed to read request body: {e}") from e


def capture_body(
    stream: BinaryIO,
    headers: Iterable[Tuple[str, str]],
) -> Tuple[io.BytesIO, io.BytesIO]:
    """Return ``(forward, diagnostic)`` readers over the same body bytes."""
    data = read_body(stream, headers)
    return io.BytesIO(data), io.BytesIO(data)
