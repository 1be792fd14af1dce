"""
Origin policy and CORS settings.

The policy only ever looks at the hostname of the `Origin` header. Requests
without an `Origin` header (same-origin navigation, curl, health checks) are
always allowed, and an empty allow-list disables the policy altogether.
"""

from __future__ import annotations

import re
from typing import AbstractSet, Any, Dict, Optional
from urllib.parse import urlsplit

CORS_ALLOWED_METHODS = ["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"]


def origin_hostname(origin: str) -> Optional[str]:
    """Return the lowercase hostname of an `Origin` value, or None if malformed."""
    try:
        parts = urlsplit(origin.strip())
        hostname = parts.hostname
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None
    return hostname.lower()


def is_origin_allowed(origin: Optional[str], allowed: AbstractSet[str]) -> bool:
    if not allowed:
        return True
    if not origin:
        return True
    hostname = origin_hostname(origin)
    if hostname is None:
        return False
    return hostname in allowed


def cors_origin_regex(allowed: AbstractSet[str]) -> str:
    """Match any scheme and port on an allowed hostname, e.g. `http://cms.example.com:8080`."""
    hosts = "|".join(re.escape(h.lower()) for h in sorted(allowed))
    return rf"(?i)[a-z][a-z0-9+.\-]*://(?:{hosts})(?::\d+)?"


def cors_options(allowed: AbstractSet[str]) -> Dict[str, Any]:
    """Keyword arguments for Starlette's `CORSMiddleware`."""
    return {
        "allow_origin_regex": cors_origin_regex(allowed),
        "allow_credentials": True,
        "allow_methods": CORS_ALLOWED_METHODS,
        "allow_headers": ["*"],
    }
