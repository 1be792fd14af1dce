from __future__ import annotations

from typing import Dict

# Hardening headers set on every response. No Content-Security-Policy: the CMS
# bundle injects inline styles/scripts and breaks under a default policy.
SECURITY_HEADERS: Dict[str, str] = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


def apply_security_headers(headers) -> None:  # type: ignore[no-untyped-def]
    """Set hardening headers on a Starlette `MutableHeaders`, keeping any already present."""
    for name, value in SECURITY_HEADERS.items():
        if name not in headers:
            headers[name] = value
    if "x-powered-by" in headers:
        del headers["x-powered-by"]
