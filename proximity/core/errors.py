"""
Proximity error types.

Per-request errors are turned into a 599 response by the executor; setup
errors (config, certificates) abort the process before the listener starts.
"""

from __future__ import annotations


class ProximityError(Exception):
    """Base class for all proxy errors."""


class ConfigError(ProximityError):
    """Configuration value is missing or malformed."""


class InvalidURL(ProximityError):
    """Inbound request target or upstream URL cannot be parsed."""


class CertificateLoadError(ProximityError):
    """Client certificate/key pair could not be loaded."""


class TransportError(ProximityError):
    """Connection, TLS or timeout failure talking to the upstream."""


class TooManyRedirects(ProximityError):
    """Redirect chain exceeded the hop limit."""

    def __init__(self, hops: int, limit: int):
        self.hops = hops
        self.limit = limit
        super().__init__(f"stopped after {limit} redirects")


class BodyReadError(ProximityError):
    """A request or response body could not be read completely."""
