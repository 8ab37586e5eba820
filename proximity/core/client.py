"""
Outbound HTTP client shared by all request handlers.
"""

from __future__ import annotations

from http.cookiejar import DefaultCookiePolicy

import requests
from requests.structures import CaseInsensitiveDict

from proximity.core.redirects import RedirectPolicy
from proximity.core.tls import TLSAdapter


class ProxySession(requests.Session):
    """
    ``requests`` session wired to the TLS transport and redirect policy.

    Built once and shared read-only between threads: cookies are never
    stored, no default headers are added and proxy/netrc settings from the
    environment are ignored, so each call depends on its inbound request only.
    """

    def __init__(self, transport: TLSAdapter, redirect_policy: RedirectPolicy):
        super().__init__()
        self.redirect_policy = redirect_policy
        self.headers = CaseInsensitiveDict()
        self.trust_env = False
        self.verify = transport.verify
        self.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        # requests raises its own TooManyRedirects one hop after the policy
        # has already stopped the chain.
        self.max_redirects = redirect_policy.max_redirects + 1
        self.mount("https://", transport)
        self.mount("http://", transport)

    def rebuild_auth(self, prepared_request, response):
        # Replaces the default, which strips Authorization on a host change.
        self.redirect_policy(prepared_request, response)


def create_session(transport: TLSAdapter, redirect_policy: RedirectPolicy) -> ProxySession:
    return ProxySession(transport, redirect_policy)
