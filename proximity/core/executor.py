"""
Proximity request executor
==========================
Forwards one inbound request to the upstream and relays the answer.

Each call walks the states::

    REWRITING -> DISPATCHING -> AWAITING_RESPONSE -> RELAYING -> DONE
         \\             \\                 \\               \\
          +-------------+-----------------+---------------+--> ABORTED

Any failure inside the proxy ends in ABORTED and the caller gets the
synthetic 599 status. Counters: ``requests_total`` once the request is about
to reach the upstream, then exactly one of ``requests_success`` (status 200)
or ``requests_failure`` (anything else, including transport errors).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Dict, List, Optional, Tuple

import requests
import urllib3

from proximity.config import PROXY_FAILURE_STATUS, ProxyConfig
from proximity.core.body import capture_body
from proximity.core.client import ProxySession
from proximity.core.diagnostics import DiagnosticRecorder
from proximity.core.errors import (
    BodyReadError,
    InvalidURL,
    ProximityError,
    TooManyRedirects,
    TransportError,
)
from proximity.core.metrics import (
    REQUESTS_FAILURE,
    REQUESTS_SUCCESS,
    REQUESTS_TOTAL,
    ProxyMetrics,
)
from proximity.core.rewrite import rewrite_url

logger = logging.getLogger(__name__)

Headers = List[Tuple[str, str]]

# Consumed by the inbound listener itself: Host comes from the upstream URL
# and the body is re-framed after buffering.
_INBOUND_ONLY_HEADERS = ("host", "transfer-encoding")

# The relayed body is always de-chunked.
_UPSTREAM_ONLY_HEADERS = ("transfer-encoding",)


# ── Data Models ──────────────────────────────────────────────────────────────

class ProxyState(str, Enum):
    REWRITING = "rewriting"
    DISPATCHING = "dispatching"
    AWAITING_RESPONSE = "awaiting_response"
    RELAYING = "relaying"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class InboundRequest:
    """A request as delivered by the listener; ``body`` can be read once."""
    method: str
    target: str
    headers: Headers
    body: BinaryIO

    def header(self, name: str, default: str = "") -> str:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default


@dataclass
class ProxyOutcome:
    """Where one ``execute`` call ended and what the caller received."""
    state: ProxyState
    status: int
    url: str = ""
    redirects: int = 0
    error: Optional[ProximityError] = None

    @property
    def ok(self) -> bool:
        return self.state is ProxyState.DONE


class Responder(ABC):
    """Writes the relayed (or synthetic) response back to the caller."""

    @abstractmethod
    def send(self, status: int, reason: str = "", headers: Optional[Headers] = None, body: bytes = b"") -> None:
        ...


@dataclass
class BufferedResponder(Responder):
    """Responder that keeps what was sent; used outside a live connection."""
    status: int = 0
    reason: str = ""
    headers: Headers = field(default_factory=list)
    body: bytes = b""
    sent: int = 0

    def send(self, status: int, reason: str = "", headers: Optional[Headers] = None, body: bytes = b"") -> None:
        self.status = status
        self.reason = reason
        self.headers = list(headers or [])
        self.body = body
        self.sent += 1


def outbound_headers(headers: Headers) -> Dict[str, str]:
    """Copy inbound headers for the upstream, folding repeated names."""
    merged: Dict[str, str] = {}
    names: Dict[str, str] = {}
    for name, value in headers:
        lowered = name.lower()
        if lowered in _INBOUND_ONLY_HEADERS:
            continue
        if lowered in names:
            sep = "; " if lowered == "cookie" else ", "
            merged[names[lowered]] += sep + value
        else:
            names[lowered] = name
            merged[name] = value
    return merged


def relay_headers(response: requests.Response) -> Headers:
    """Upstream response headers in wire order, repeated names kept apart."""
    raw_headers = getattr(response.raw, "headers", None)
    items = raw_headers.items() if raw_headers is not None else response.headers.items()
    return [(k, v) for k, v in items if k.lower() not in _UPSTREAM_ONLY_HEADERS]


# ── Executor ─────────────────────────────────────────────────────────────────

class ProxyExecutor:
    """
    Forwards inbound requests through the shared client.

    One executor serves every handler thread; all per-request state lives in
    the ``execute`` call.
    """

    def __init__(
        self,
        config: ProxyConfig,
        session: ProxySession,
        metrics: ProxyMetrics,
        recorder: Optional[DiagnosticRecorder] = None,
    ):
        self.config = config
        self.session = session
        self.metrics = metrics
        self.recorder = recorder or DiagnosticRecorder(config.verbosity)

    def _abort(self, responder: Responder, error: ProximityError, url: str = "", redirects: int = 0) -> ProxyOutcome:
        responder.send(PROXY_FAILURE_STATUS)
        return ProxyOutcome(ProxyState.ABORTED, PROXY_FAILURE_STATUS, url=url, redirects=redirects, error=error)

    def execute(self, inbound: InboundRequest, responder: Responder) -> ProxyOutcome:
        """Forward ``inbound`` and relay the result to ``responder``."""
        # REWRITING
        try:
            url = rewrite_url(inbound.target, self.config.remote)
            forward_body, diagnostic_body = capture_body(inbound.body, inbound.headers)
        except InvalidURL as e:
            logger.warning(str(e))
            return self._abort(responder, e)
        except BodyReadError as e:
            logger.warning(f"failed to read request body: {e}")
            return self._abort(responder, e)

        try:
            prepared = self.session.prepare_request(requests.Request(
                method=inbound.method,
                url=url,
                headers=outbound_headers(inbound.headers),
                data=forward_body.read() or None,
            ))
        except (requests.RequestException, ValueError) as e:
            error = InvalidURL(f"failed to create new HTTP request: {e}")
            logger.warning(str(error))
            return self._abort(responder, error, url=url)

        # DISPATCHING
        self.metrics.increment(REQUESTS_TOTAL)
        if self.recorder.enabled:
            self.recorder.record_params(
                url, inbound.method, inbound.header("Content-Type"), diagnostic_body.getvalue()
            )
            self.recorder.record_request(prepared)

        # AWAITING_RESPONSE
        try:
            response = self.session.send(
                prepared,
                allow_redirects=True,
                stream=True,
                timeout=self.config.timeout,
            )
        except TooManyRedirects as e:
            self.metrics.increment(REQUESTS_FAILURE)
            logger.warning(f"{url}: {e}")
            return self._abort(responder, e, url=url, redirects=e.hops - 1)
        except requests.RequestException as e:
            self.metrics.increment(REQUESTS_FAILURE)
            error = TransportError(f"failed to read response: {e}")
            logger.warning(f"{url}: {error}")
            return self._abort(responder, error, url=url)

        try:
            redirects = len(response.history)
            if response.status_code == 200:
                self.metrics.increment(REQUESTS_SUCCESS)
            else:
                self.metrics.increment(REQUESTS_FAILURE)

            # RELAYING
            try:
                body = response.raw.read(decode_content=False)
            except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as e:
                error = BodyReadError(f"failed to read body: {e}")
                logger.warning(f"{url}: {error}")
                return self._abort(responder, error, url=url, redirects=redirects)

            self.recorder.record_response(response, body)
            responder.send(response.status_code, response.reason or "", relay_headers(response), body)
            return ProxyOutcome(ProxyState.DONE, response.status_code, url=url, redirects=redirects)
        finally:
            response.close()
