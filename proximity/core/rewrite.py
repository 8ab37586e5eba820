"""
Request target rewriting: inbound path+query onto the upstream scheme/host.
"""

from __future__ import annotations

import re
import urllib.parse

from proximity.core.errors import InvalidURL

_BAD_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")
_CONTROL_OR_SPACE = re.compile(r"[\x00-\x20\x7f]")

_UPSTREAM_SCHEMES = ("http", "https")


def validate_upstream(url: str) -> urllib.parse.SplitResult:
    """Parse the configured upstream URL, raising ``InvalidURL`` if unusable."""
    if not url or _CONTROL_OR_SPACE.search(url):
        raise InvalidURL(f"invalid upstream url '{url}'")
    try:
        parsed = urllib.parse.urlsplit(url)
        parsed.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise InvalidURL(f"invalid upstream url '{url}': {e}") from None
    if parsed.scheme.lower() not in _UPSTREAM_SCHEMES:
        raise InvalidURL(f"upstream url '{url}' must use http or https")
    if not parsed.hostname:
        raise InvalidURL(f"upstream url '{url}' has no host")
    return parsed


def _check_escapes(path: str, target: str) -> None:
    # The query is passed through as sent; only the path must be well-escaped.
    if _BAD_PERCENT.search(path):
        raise InvalidURL(f"failed to parse requested uri '{target}': invalid percent-encoding")


def request_path(target: str) -> str:
    """Return the path+query of an inbound request target.

    Origin-form targets (``/a?b``) are returned unchanged; absolute-form
    targets (``http://host/a?b``) are reduced to their path+query.
    """
    if not target or _CONTROL_OR_SPACE.search(target):
        raise InvalidURL(f"failed to parse requested uri '{target}'")
    if target.startswith("/"):
        # Drop a fragment; it never belongs on the wire.
        target = target.split("#", 1)[0]
        _check_escapes(target.split("?", 1)[0], target)
        return target

    try:
        parsed = urllib.parse.urlsplit(target)
    except ValueError as e:
        raise InvalidURL(f"failed to parse requested uri '{target}': {e}") from None
    if parsed.scheme.lower() not in _UPSTREAM_SCHEMES or not parsed.netloc:
        raise InvalidURL(f"failed to parse requested uri '{target}'")

    _check_escapes(parsed.path, target)
    path = parsed.path or "/"
    if parsed.query:
        path += f"?{parsed.query}"
    return path


def rewrite_url(target: str, upstream: str) -> str:
    """Build the outbound URL for an inbound request target.

    >>> rewrite_url("/foo?x=1", "https://api.example.com")
    'https://api.example.com/foo?x=1'
    """
    path = request_path(target)
    parsed = validate_upstream(upstream)
    # Only scheme and host:port are taken from the upstream; its path and any
    # credentials are ignored.
    host = parsed.netloc.rpartition("@")[2]
    return f"{parsed.scheme}://{host}{path}"
