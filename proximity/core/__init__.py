"""
Proximity Core Module
"""

from proximity.core.errors import (
    BodyReadError,
    CertificateLoadError,
    ConfigError,
    InvalidURL,
    ProximityError,
    TooManyRedirects,
    TransportError,
)

__all__ = [
    "BodyReadError",
    "CertificateLoadError",
    "ConfigError",
    "InvalidURL",
    "ProximityError",
    "TooManyRedirects",
    "TransportError",
]
