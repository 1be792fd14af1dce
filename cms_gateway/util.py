from __future__ import annotations

import base64
import os


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def path_has_prefix(path: str, prefix: str) -> bool:
    """
    Literal prefix match on the request path, e.g. `/auth` matches `/auth`,
    `/auth/github` and `/authorize` alike.
    """
    return (path or "").startswith(prefix)
