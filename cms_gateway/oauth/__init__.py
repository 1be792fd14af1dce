"""
OAuth bridging.

Two interchangeable strategies behind one `OAuthBridge` interface:
- process:   reverse proxy to a supervised child process on loopback
- inprocess: direct call into an ASGI application
"""

from __future__ import annotations

from typing import Optional, Tuple

from cms_gateway.config import OAUTH_MODE_INPROCESS, GatewayConfig

from .base import OAuthBridge
from .inprocess import InProcessOAuthBridge, load_asgi_app
from .proxy import ProxyOAuthBridge
from .supervisor import OAuthProcessSupervisor, ProcessState


def build_oauth_bridge(cfg: GatewayConfig) -> Tuple[OAuthBridge, Optional[OAuthProcessSupervisor]]:
    """Pick the bridge for this deployment; the supervisor is None for in-process mode."""
    if cfg.oauth_mode == OAUTH_MODE_INPROCESS:
        return InProcessOAuthBridge(load_asgi_app(cfg.oauth_app or ""), max_body_bytes=cfg.max_body_bytes), None

    supervisor = OAuthProcessSupervisor(
        cfg.oauth_command,
        host=cfg.oauth_host,
        port=cfg.oauth_port,
        shutdown_grace_seconds=cfg.oauth_shutdown_grace_seconds,
        max_restarts=cfg.oauth_max_restarts,
    )
    bridge = ProxyOAuthBridge(
        cfg.oauth_base_url,
        timeout_seconds=cfg.oauth_proxy_timeout_seconds,
        supervisor=supervisor,
        max_body_bytes=cfg.max_body_bytes,
    )
    return bridge, supervisor


__all__ = [
    "InProcessOAuthBridge",
    "OAuthBridge",
    "OAuthProcessSupervisor",
    "ProcessState",
    "ProxyOAuthBridge",
    "build_oauth_bridge",
    "load_asgi_app",
]
