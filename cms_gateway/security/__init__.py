"""
Request gatekeeping.

Applied in order to every inbound request:
1. Rate limiting - per-client fixed window
2. Origin policy - hostname allow-list + CORS headers
3. Write-mutation guard - anti-forgery token on non-OAuth writes
"""

from .csrf import requires_csrf
from .origin import is_origin_allowed
from .rate_limit import RateLimiter, resolve_client_address

__all__ = ["RateLimiter", "is_origin_allowed", "requires_csrf", "resolve_client_address"]
