"""
Verbosity-gated request/response dumps.

Levels:
  0  silent
  1  request parameters and redirect hops
  2  + outbound request and upstream response headers
  3  + request and response bodies

Recording never changes the outcome of a proxied request: any failure while
formatting or writing a dump is logged and dropped.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Callable, Iterable, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

# Default sink for dumps; kept apart from the module logger so it can be
# routed or silenced on its own.
diagnostics_log = logging.getLogger("proximity.diagnostics")

_FORM_METHODS = ("POST", "PUT", "PATCH")
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _decode(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


def _header_lines(headers: Iterable[Tuple[str, str]]) -> List[str]:
    return [f"{k}: {v}" for k, v in headers]


def parse_params(url: str, method: str, content_type: str, body: bytes) -> List[Tuple[str, List[str]]]:
    """Form and query parameters of a request, form body first.

    Only urlencoded bodies of POST/PUT/PATCH requests are parsed, the same
    requests an HTTP form parser would look at.
    """
    params: dict = {}
    if method.upper() in _FORM_METHODS and content_type.split(";")[0].strip().lower() == _FORM_CONTENT_TYPE:
        for key, value in urllib.parse.parse_qsl(_decode(body), keep_blank_values=True):
            params.setdefault(key, []).append(value)
    query = urllib.parse.urlsplit(url).query
    for key, value in urllib.parse.parse_qsl(query, keep_blank_values=True):
        params.setdefault(key, []).append(value)
    return list(params.items())


def dump_request(request: requests.PreparedRequest, include_body: bool) -> str:
    """Render a prepared request the way it goes on the wire."""
    parsed = urllib.parse.urlsplit(request.url)
    lines = [f"{request.method} {request.path_url} HTTP/1.1"]
    if "Host" not in request.headers:
        lines.append(f"Host: {parsed.netloc.rpartition('@')[2]}")
    lines.extend(_header_lines(request.headers.items()))
    text = "\r\n".join(lines) + "\r\n\r\n"
    if include_body and request.body:
        body = request.body
        if hasattr(body, "getvalue"):
            body = body.getvalue()
        text += _decode(body) if isinstance(body, bytes) else str(body)
    return text


def dump_response(response: requests.Response, body: Optional[bytes]) -> str:
    """Render an upstream response; ``body`` is omitted when ``None``."""
    version = {10: "HTTP/1.0", 11: "HTTP/1.1"}.get(getattr(response.raw, "version", 11), "HTTP/1.1")
    lines = [f"{version} {response.status_code} {response.reason or ''}".rstrip()]
    raw_headers = getattr(response.raw, "headers", None)
    lines.extend(_header_lines(raw_headers.items() if raw_headers is not None else response.headers.items()))
    text = "\r\n".join(lines) + "\r\n\r\n"
    if body:
        text += _decode(body)
    return text


class DiagnosticRecorder:
    """Writes request/response summaries to a line sink by verbosity."""

    def __init__(self, verbosity: int = 0, sink: Optional[Callable[[str], None]] = None):
        self.verbosity = verbosity
        self._sink = sink or diagnostics_log.info

    @property
    def enabled(self) -> bool:
        return self.verbosity > 0

    def _emit(self, what: str, build: Callable[[], List[str]]) -> None:
        try:
            for line in build():
                self._sink(line)
        except Exception as e:
            logger.warning(f"Failed to record {what}: {e}")

    def record_params(self, url: str, method: str, content_type: str, body: bytes) -> None:
        """Level 1: one ``name:<tab>value`` line per parameter (first value)."""
        if self.verbosity < 1:
            return

        def build() -> List[str]:
            lines = ["----- PARAMS ------"]
            for key, values in parse_params(url, method, content_type, body):
                lines.append(f"{key}:\t{urllib.parse.unquote_plus(values[0])}\t")
            return lines

        self._emit("request params", build)

    def record_request(self, request: requests.PreparedRequest) -> None:
        """Level 2: outbound request headers; level 3 adds the body."""
        if self.verbosity < 2:
            return
        self._emit("request", lambda: ["----- REQUEST ------", dump_request(request, self.verbosity >= 3)])

    def record_redirect(self, request: requests.PreparedRequest, hop: int) -> None:
        """Level 1: the request about to be sent for redirect hop ``hop``."""
        if self.verbosity < 1:
            return
        self._emit(
            "redirect",
            lambda: [f"----- REDIRECT ({hop}) ------", dump_request(request, self.verbosity >= 3)],
        )

    def record_response(self, response: requests.Response, body: bytes) -> None:
        """Level 2: upstream response headers; level 3 adds the body."""
        if self.verbosity < 2:
            return
        self._emit(
            "response",
            lambda: ["----- RESPONSE ------", dump_response(response, body if self.verbosity >= 3 else None)],
        )
