"""
Pytest config.

Pins the repo root on sys.path so `import cms_gateway` works whether or not the
package is installed, and provides a throwaway CMS tree plus config builders.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from starlette.requests import Request  # noqa: E402
from starlette.responses import PlainTextResponse, Response  # noqa: E402

from cms_gateway.config import GatewayConfig, build_gateway_config, load_gateway_config  # noqa: E402

BUNDLE_BYTES = b"/* decap */\nwindow.CMS = {init: function () {}};\n\x00\xff"
CONFIG_YML = "backend:\n  name: github\n  repo: org/site\n  base_url: https://cms.example.com\n"


class RecordingBridge:
    """OAuth bridge double that echoes what it was asked to forward."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, str]] = []
        self.closed = False

    async def forward(self, request: Request) -> Response:
        body = await request.body()
        self.calls.append(
            {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "body": body.decode("utf-8", errors="replace"),
            }
        )
        return PlainTextResponse(f"oauth:{request.method}:{request.url.path}?{request.url.query}")

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _clear_config_cache():
    load_gateway_config.cache_clear()
    yield
    load_gateway_config.cache_clear()


@pytest.fixture
def cms_root(tmp_path: Path) -> Path:
    """
    tmp/
      config.yml
      secret.txt          (must never be served)
      cms/
        dist/decap-cms.js, decap-cms.js.map
        public/index.html, robots.txt
    """
    root = tmp_path / "cms"
    (root / "dist").mkdir(parents=True)
    (root / "public").mkdir()
    (root / "dist" / "decap-cms.js").write_bytes(BUNDLE_BYTES)
    (root / "dist" / "decap-cms.js.map").write_text('{"version":3,"sources":[]}')
    (root / "public" / "index.html").write_text("<!doctype html><title>CMS</title>")
    (root / "public" / "robots.txt").write_text("User-agent: *\nDisallow: /\n")
    (tmp_path / "config.yml").write_text(CONFIG_YML)
    (tmp_path / "secret.txt").write_text("do-not-serve")
    return root


@pytest.fixture
def make_config(cms_root: Path):
    def _make(env: Optional[Dict[str, str]] = None) -> GatewayConfig:
        base = {
            "CMS_ROOT": str(cms_root),
            "GATEWAY_ENV": "development",
            "PORT": "8000",
            "OAUTH_PORT": "8081",
        }
        base.update(env or {})
        return build_gateway_config(base)

    return _make


@pytest.fixture
def bridge() -> RecordingBridge:
    return RecordingBridge()
