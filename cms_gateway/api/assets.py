from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, FastAPI
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from cms_gateway.config import GatewayConfig
from cms_gateway.errors import NotFound

logger = logging.getLogger(__name__)

BUNDLE_NAME = "decap-cms.js"
SOURCE_MAP_NAME = "decap-cms.js.map"
ASSET_METHODS = ["GET", "HEAD"]


def _serve(path: Path, media_type: str) -> FileResponse:
    # Fixed paths only; nothing from the request ever reaches the filesystem here.
    if not path.is_file():
        raise NotFound(str(path))
    return FileResponse(path, media_type=media_type)


def build_asset_router(cfg: GatewayConfig) -> APIRouter:
    router = APIRouter()
    bundle = cfg.dist_dir / BUNDLE_NAME
    source_map = cfg.dist_dir / SOURCE_MAP_NAME
    cms_config = cfg.cms_config_file

    @router.api_route("/" + BUNDLE_NAME, methods=ASSET_METHODS, include_in_schema=False)
    def cms_bundle() -> FileResponse:
        return _serve(bundle, "application/javascript; charset=utf-8")

    @router.api_route("/" + SOURCE_MAP_NAME, methods=ASSET_METHODS, include_in_schema=False)
    def cms_source_map() -> FileResponse:
        return _serve(source_map, "application/json; charset=utf-8")

    @router.api_route("/config.yml", methods=ASSET_METHODS, include_in_schema=False)
    def cms_config_file() -> FileResponse:
        return _serve(cms_config, "text/yaml; charset=utf-8")

    return router


def mount_public_dir(app: FastAPI, cfg: GatewayConfig) -> None:
    """
    Serve `<cms_root>/public` at `/` as the lowest-priority route.

    StaticFiles resolves every path inside the directory and answers 404 for
    anything that escapes it.
    """
    public = cfg.public_dir
    if not public.is_dir():
        logger.info("No public directory at %s; only fixed assets are served", public)
        return
    app.mount("/", StaticFiles(directory=str(public), html=True), name="public")
