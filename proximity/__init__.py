"""
Proximity: HTTP(S) forwarding proxy
===================================

Forwards every inbound request to one configured upstream:
  • URL rewriting onto the upstream scheme/host
  • Client-certificate or skip-verify TLS towards the upstream
  • Redirects followed with the caller's headers on every hop
  • Verbatim status/header/body relay, 599 for proxy-side failures
  • Request outcome counters and verbosity-gated request dumps
"""

__version__ = "1.0.0"
__app_name__ = "Proximity"
