from __future__ import annotations

import json
from typing import Mapping, Optional
from urllib.parse import parse_qs

from itsdangerous import BadSignature, BadTimeSignature, SignatureExpired, URLSafeTimedSerializer

from cms_gateway.config import GatewayConfig
from cms_gateway.errors import InvalidAntiForgeryToken
from cms_gateway.util import path_has_prefix, random_token

CSRF_COOKIE_NAME = "_csrf"
CSRF_FIELD_NAME = "_csrf"
CSRF_SALT = "cms-gateway-csrf-v1"

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
OAUTH_PATH_PREFIXES = ("/auth", "/callback")

# Checked in order; first non-empty value wins.
TOKEN_HEADERS = ("x-csrf-token", "csrf-token", "x-xsrf-token", "xsrf-token")


def is_mutating(method: str) -> bool:
    return (method or "").upper() in MUTATING_METHODS


def is_oauth_path(path: str) -> bool:
    return any(path_has_prefix(path, p) for p in OAUTH_PATH_PREFIXES)


def requires_csrf(method: str, path: str) -> bool:
    """
    Anti-forgery verification applies to writes, except on the OAuth entry
    points: those are reached through provider-driven redirects that cannot
    carry a page-issued token.
    """
    return is_mutating(method) and not is_oauth_path(path)


def _serializer(secret: str) -> URLSafeTimedSerializer:
    # Keyed by the per-session cookie secret: a token only verifies against
    # the cookie it was issued for.
    return URLSafeTimedSerializer(secret_key=secret, salt=CSRF_SALT)


def new_secret() -> str:
    return random_token(18)


def issue_token(secret: str) -> str:
    return _serializer(secret).dumps(random_token(8))


def verify_token(secret: Optional[str], token: Optional[str], *, max_age: int) -> None:
    """Raise `InvalidAntiForgeryToken` unless `token` was issued for `secret`."""
    if not secret:
        raise InvalidAntiForgeryToken("missing csrf cookie")
    if not token:
        raise InvalidAntiForgeryToken("missing csrf token")
    try:
        _serializer(secret).loads(token, max_age=max_age)
    except (SignatureExpired, BadTimeSignature, BadSignature) as e:
        raise InvalidAntiForgeryToken(type(e).__name__) from e


def token_from_headers_or_query(headers: Mapping[str, str], query: Mapping[str, str]) -> Optional[str]:
    for name in TOKEN_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    value = (query.get(CSRF_FIELD_NAME) or "").strip()
    return value or None


def token_from_body(content_type: str, body: bytes) -> Optional[str]:
    """Extract `_csrf` from an urlencoded or JSON body; anything else yields None."""
    if not body:
        return None
    ctype = (content_type or "").split(";", 1)[0].strip().lower()
    if ctype == "application/x-www-form-urlencoded":
        values = parse_qs(body.decode("utf-8", errors="replace")).get(CSRF_FIELD_NAME) or [""]
        return values[0].strip() or None
    if ctype == "application/json" or ctype.endswith("+json"):
        try:
            data = json.loads(body.decode("utf-8", errors="replace"))
        except ValueError:
            return None
        if isinstance(data, dict) and isinstance(data.get(CSRF_FIELD_NAME), str):
            return data[CSRF_FIELD_NAME].strip() or None
    return None


def csrf_cookie_kwargs(cfg: GatewayConfig, value: str) -> dict:
    return {
        "key": CSRF_COOKIE_NAME,
        "value": value,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
