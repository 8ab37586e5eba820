"""
Redirect policy for the outbound client.

Called once per redirect response, after the client has built the next
request and before it is sent. Every header of the previous request is put
back on the new one so authorization and cookies survive the whole chain,
including hops to another host.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from proximity.config import MAX_REDIRECTS
from proximity.core.diagnostics import DiagnosticRecorder
from proximity.core.errors import TooManyRedirects

logger = logging.getLogger(__name__)

# Framing headers that only make sense while the request still has a body.
_BODY_HEADERS = ("content-length", "transfer-encoding", "content-type")


class RedirectPolicy:
    """Header carry-over and hop limit for one redirect chain step."""

    def __init__(self, recorder: Optional[DiagnosticRecorder] = None, max_redirects: int = MAX_REDIRECTS):
        self.recorder = recorder or DiagnosticRecorder(0)
        self.max_redirects = max_redirects

    def __call__(self, request: requests.PreparedRequest, response: requests.Response) -> None:
        """Prepare ``request``, the hop following redirect ``response``.

        Raises:
            TooManyRedirects: when this hop would exceed the hop limit.
        """
        hop = len(response.history) + 1
        if hop > self.max_redirects:
            raise TooManyRedirects(hop, self.max_redirects)

        # Cookies set by a redirect response are never sent on the next hop.
        request.headers.pop("Cookie", None)

        previous = response.request
        body_dropped = request.body is None
        for name, value in previous.headers.items():
            lowered = name.lower()
            if lowered == "host":
                continue
            if body_dropped and lowered in _BODY_HEADERS:
                continue
            request.headers[name] = value

        logger.debug(f"redirect {hop}: {response.status_code} -> {request.url}")
        self.recorder.record_redirect(request, hop)
