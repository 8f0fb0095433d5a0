from __future__ import annotations

"""
HTTP surface for the compositor and thumbnail relay.

  GET  /api/tile/{z}/{x}/{y}.png?ids=newest,...,oldest   composited PNG
  GET  /api/thumb/{layer_id}.png                        thumbnail bytes (streamed)
  POST /api/key   {"api_key": "..."}                   store provider key
  GET  /health

Run:
  python -m imagery.server --port 8080 --debug
  uvicorn imagery.server:app --port 8080
"""

import argparse
import io
import logging
import os
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from common.config import load_config
from common.context import RequestContext
from common.errors import (
    Cancelled,
    DeadlineExceeded,
    ImageryError,
    IntegrityError,
    MissingAPIKeyError,
    ProviderError,
    RequestBuildError,
    root_cause,
)
from common.logging_setup import setup_logging
from common.types import TileCoord
from imagery import __version__
from imagery.compositor import TileCompositor
from imagery.gateway import ProviderGateway
from imagery.keys import APIKeyStore
from imagery.thumbnail import open_thumbnail


log = logging.getLogger(__name__)


class KeyIn(BaseModel):
    api_key: str


def http_status(exc: ImageryError) -> int:
    cause = root_cause(exc)
    if isinstance(cause, RequestBuildError):
        return 400
    if isinstance(cause, MissingAPIKeyError):
        return 401
    if isinstance(cause, ProviderError):
        return 404 if cause.status_code == 404 else 502
    if isinstance(cause, DeadlineExceeded):
        return 504
    if isinstance(cause, Cancelled):
        return 503
    if isinstance(cause, IntegrityError):
        return 500
    return 502


def create_app(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    gateway: Optional[ProviderGateway] = None,
    keys: Optional[APIKeyStore] = None,
) -> FastAPI:
    cfg = cfg or load_config()
    keys = keys or APIKeyStore(
        initial=cfg.get("keys", {}).get("api_key"),
        path=cfg.get("keys", {}).get("path"),
    )
    gateway = gateway or ProviderGateway.from_config(cfg, keys.get)
    timeout_s = float(cfg.get("compositor", {}).get("timeout_s", 15.0))
    compositor = TileCompositor(gateway, timeout_s=timeout_s)

    app = FastAPI(title="Imagery Tile Compositor", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins", ["*"]),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.state.keys = keys
    app.state.gateway = gateway
    app.state.compositor = compositor

    @app.exception_handler(ImageryError)
    def _imagery_error(request: Request, exc: ImageryError) -> JSONResponse:
        status = http_status(exc)
        body: Dict[str, Any] = {"error": exc.code, "detail": str(exc)}
        cause = root_cause(exc)
        if isinstance(cause, ProviderError):
            body["provider_status"] = cause.status_code
        if status >= 500:
            log.warning("%s %s -> %d: %s", request.method, request.url.path, status, exc)
        return JSONResponse(body, status_code=status)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "version": __version__,
            "api_key_configured": keys.configured,
            "provider": {
                "host": gateway.host,
                "product_type": gateway.product_type,
                "shards": gateway.shards,
            },
        }

    @app.get("/api/tile/{z}/{x}/{y}.png")
    def tile(z: int, x: int, y: int, ids: str = Query("", description="Comma separated layer ids, newest first")):
        try:
            coord = TileCoord(z, x, y)
        except (TypeError, ValueError) as e:
            raise RequestBuildError(str(e)) from e
        layer_ids = [s for s in (p.strip() for p in ids.split(",")) if s]
        img = compositor.fetch_and_composite(RequestContext.background(), layer_ids, coord)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return Response(content=buf.getvalue(), media_type="image/png", headers={"Cache-Control": "no-store"})

    @app.get("/api/thumb/{layer_id}.png")
    def thumb(layer_id: str):
        stream = open_thumbnail(gateway, RequestContext.background(), layer_id, timeout_s)
        headers = {"Cache-Control": "no-store"}
        if stream.content_length is not None:
            headers["Content-Length"] = str(stream.content_length)
        return StreamingResponse(
            iter(stream),
            media_type=stream.content_type,
            headers=headers,
            background=BackgroundTask(stream.close),
        )

    @app.post("/api/key", status_code=204)
    def save_key(body: KeyIn):
        keys.set(body.api_key)
        return Response(status_code=204)

    return app


app = create_app()


def main() -> None:
    ap = argparse.ArgumentParser(description="Layered imagery tile server")
    ap.add_argument("--config", default=None, help="YAML params (default: config/params.yaml)")
    ap.add_argument("--host", default="0.0.0.0", help="Bind address")
    ap.add_argument("--port", type=int, default=None, help="Serving port (env PORT, default 8080)")
    ap.add_argument("--debug", action="store_true", help="Enable debug logging verbosity")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging("DEBUG" if args.debug else cfg.get("logging", {}).get("level"), force=True)
    if args.debug:
        log.debug("Debug logging enabled")

    port = args.port or int(os.environ.get("PORT") or cfg.get("server", {}).get("port", 8080))
    log.info("Starting HTTP server on port %d", port)
    uvicorn.run(create_app(cfg), host=args.host, port=port, log_config=None)
    log.info("Shutdown")


# -------- local dev entrypoint --------
if __name__ == "__main__":
    main()
