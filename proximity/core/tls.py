"""
Outbound TLS transport.

The SSL context is built once at startup and mounted on a ``requests``
adapter that every proxied call shares. Two modes:

  • skip-verify: any upstream certificate is accepted (test setups only)
  • client-cert: the configured certificate/key pair is presented to the
    upstream and the upstream certificate is verified
"""

from __future__ import annotations

import logging
import ssl
from typing import Any

import urllib3
from requests.adapters import HTTPAdapter
from urllib3.exceptions import InsecureRequestWarning

from proximity.config import ProxyConfig
from proximity.core.errors import CertificateLoadError
from proximity.core.rewrite import validate_upstream

logger = logging.getLogger(__name__)


def insecure_context() -> ssl.SSLContext:
    """Context that accepts any upstream certificate."""
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def client_cert_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """Verifying context presenting the given certificate/key pair.

    Raises:
        CertificateLoadError: if either file is missing, malformed, or the
            key does not match the certificate.
    """
    ctx = ssl.create_default_context()
    try:
        ctx.load_cert_chain(certfile=cert_file, keyfile=key_file)
    except (OSError, ssl.SSLError) as e:
        # ssl.SSLError is an OSError too; both mean the pair is unusable.
        raise CertificateLoadError(
            f"failed to load certificate {cert_file} / key {key_file}: {e}"
        ) from e
    return ctx


def build_ssl_context(config: ProxyConfig) -> ssl.SSLContext:
    """Pick the TLS mode from the config and build its context."""
    if config.no_verify:
        logger.warning("TLS certificate verification of the upstream is DISABLED")
        urllib3.disable_warnings(InsecureRequestWarning)
        return insecure_context()

    upstream = validate_upstream(config.remote)
    if upstream.scheme.lower() == "https":
        logger.info(f"Using client certificate {config.cert_file}")
        return client_cert_context(config.cert_file, config.key_file)

    # Plain http upstream: nothing to present, but an https redirect target
    # still gets verified.
    return ssl.create_default_context()


class TLSAdapter(HTTPAdapter):
    """HTTPAdapter whose pools all use one prebuilt SSL context."""

    def __init__(self, ssl_context: ssl.SSLContext, verify: bool = True, **kwargs: Any):
        # init_poolmanager runs inside HTTPAdapter.__init__
        self.ssl_context = ssl_context
        self.verify = verify
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["ssl_context"] = self.ssl_context
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


def build_transport(config: ProxyConfig) -> TLSAdapter:
    """Build the shared outbound transport for the process lifetime."""
    ctx = build_ssl_context(config)
    return TLSAdapter(ctx, verify=not config.no_verify)
