from __future__ import annotations

import ipaddress
import os
import shlex
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, List, Mapping, Optional, Tuple

OAUTH_MODE_PROCESS = "process"
OAUTH_MODE_INPROCESS = "inprocess"


class ConfigError(ValueError):
    """Raised at startup when the environment describes an unusable gateway."""


@dataclass(frozen=True)
class GatewayConfig:
    # Listener
    host: str
    port: int
    environment: str

    # Origin policy (empty = disabled)
    allowed_origins: FrozenSet[str]

    # Rate limiting
    rate_limit_max: int
    rate_limit_window_seconds: float
    trust_proxy_hops: int

    # Request parsing / anti-forgery
    max_body_bytes: int
    csrf_token_ttl_seconds: int

    # OAuth subsystem
    oauth_mode: str
    oauth_host: str
    oauth_port: int
    oauth_command: Tuple[str, ...]
    oauth_app: Optional[str]
    oauth_proxy_timeout_seconds: float
    oauth_shutdown_grace_seconds: float
    oauth_max_restarts: int

    # Assets
    cms_root: Path
    cms_config_file: Path

    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cookie_secure(self) -> bool:
        """Cookies carry the Secure flag only in production."""
        return self.is_production

    @property
    def oauth_base_url(self) -> str:
        return f"http://{self.oauth_host}:{self.oauth_port}"

    @property
    def dist_dir(self) -> Path:
        return self.cms_root / "dist"

    @property
    def public_dir(self) -> Path:
        return self.cms_root / "public"


def parse_allowed_origins(value: str) -> FrozenSet[str]:
    """`"Host1.com, foo.bar,,"` -> `{"host1.com", "foo.bar"}`."""
    items = [x.strip().lower() for x in (value or "").split(",")]
    return frozenset(x for x in items if x)


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name, "") or "").strip() or default


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = _env_str(env, name)
    if not raw:
        return default
    try:
        value = int(float(raw))
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _env_str(env, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def is_loopback_host(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _default_oauth_command(cms_root: Path) -> List[str]:
    return ["node", str(cms_root.parent / "netlify-cms-github-oauth-provider" / "app.js")]


def build_gateway_config(env: Mapping[str, str]) -> GatewayConfig:
    """
    Build the gateway configuration from an environment mapping.

    Every value is resolved here, once; components receive the resulting
    `GatewayConfig` and never read the environment themselves.
    """
    environment = _env_str(env, "GATEWAY_ENV") or _env_str(env, "NODE_ENV") or "production"
    environment = environment.lower()

    port = _env_int(env, "PORT", 80, minimum=0)
    oauth_port = _env_int(env, "OAUTH_PORT", 8080, minimum=1)

    oauth_mode = _env_str(env, "OAUTH_MODE", OAUTH_MODE_PROCESS).lower()
    if oauth_mode not in (OAUTH_MODE_PROCESS, OAUTH_MODE_INPROCESS):
        raise ConfigError(f"OAUTH_MODE must be '{OAUTH_MODE_PROCESS}' or '{OAUTH_MODE_INPROCESS}', got {oauth_mode!r}")

    oauth_host = _env_str(env, "OAUTH_HOST", "127.0.0.1")
    oauth_app = _env_str(env, "OAUTH_APP") or None
    if oauth_mode == OAUTH_MODE_PROCESS:
        # The child must never be reachable from outside this host.
        if not is_loopback_host(oauth_host):
            raise ConfigError(f"OAUTH_HOST must be a loopback address, got {oauth_host!r}")
        if port and oauth_port == port:
            raise ConfigError("OAUTH_PORT must differ from PORT")
    elif not oauth_app:
        raise ConfigError("OAUTH_APP (module:attribute) is required when OAUTH_MODE=inprocess")

    cms_root = Path(_env_str(env, "CMS_ROOT") or os.getcwd()).expanduser().resolve()
    config_file_raw = _env_str(env, "CMS_CONFIG_FILE")
    cms_config_file = Path(config_file_raw).expanduser().resolve() if config_file_raw else cms_root.parent / "config.yml"

    command_raw = _env_str(env, "OAUTH_COMMAND")
    oauth_command = tuple(shlex.split(command_raw)) if command_raw else tuple(_default_oauth_command(cms_root))

    return GatewayConfig(
        host=_env_str(env, "HOST", "0.0.0.0"),
        port=port,
        environment=environment,
        allowed_origins=parse_allowed_origins(env.get("ORIGINS", "")),
        rate_limit_max=_env_int(env, "RATE_LIMIT_MAX", 600, minimum=1),
        rate_limit_window_seconds=_env_float(env, "RATE_LIMIT_WINDOW_SECONDS", 60.0),
        trust_proxy_hops=_env_int(env, "TRUST_PROXY_HOPS", 1, minimum=0),
        max_body_bytes=_env_int(env, "MAX_BODY_BYTES", 1024 * 1024, minimum=1),
        csrf_token_ttl_seconds=_env_int(env, "CSRF_TOKEN_TTL_SECONDS", 43200, minimum=60),
        oauth_mode=oauth_mode,
        oauth_host=oauth_host,
        oauth_port=oauth_port,
        oauth_command=oauth_command,
        oauth_app=oauth_app,
        oauth_proxy_timeout_seconds=_env_float(env, "OAUTH_PROXY_TIMEOUT_SECONDS", 5.0),
        oauth_shutdown_grace_seconds=_env_float(env, "OAUTH_SHUTDOWN_GRACE_SECONDS", 10.0),
        oauth_max_restarts=_env_int(env, "OAUTH_MAX_RESTARTS", 0, minimum=0),
        cms_root=cms_root,
        cms_config_file=cms_config_file,
        log_level=_env_str(env, "LOG_LEVEL", "info").upper(),
    )


@lru_cache(maxsize=1)
def load_gateway_config() -> GatewayConfig:
    """Load the process-wide gateway configuration from `os.environ` (cached)."""
    return build_gateway_config(os.environ)
