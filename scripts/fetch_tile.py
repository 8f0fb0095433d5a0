#!/usr/bin/env python3
"""
Fetch one composited tile (or one thumbnail) from the provider to a local file.

Handy for checking an API key and a set of layer ids without the server.

Examples:
  export PLANET_API_KEY=...
  python scripts/fetch_tile.py tile 12 1205 1539 --ids 20240102_a,20231230_b -o out/tile.png
  python scripts/fetch_tile.py thumb 20240102_a -o out/thumb.png
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

# Add the project root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.config import load_config
from common.context import RequestContext
from common.errors import ImageryError
from common.logging_setup import get_logger, setup_logging
from common.types import TileCoord
from imagery.compositor import TileCompositor
from imagery.gateway import ProviderGateway
from imagery.keys import APIKeyStore
from imagery.thumbnail import relay_thumbnail


log = get_logger("fetch_tile")


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default=None, help="YAML params (default: config/params.yaml)")
    ap.add_argument("--debug", action="store_true")
    sub = ap.add_subparsers(dest="cmd", required=True)

    t = sub.add_parser("tile", help="Composite one tile")
    t.add_argument("z", type=int)
    t.add_argument("x", type=int)
    t.add_argument("y", type=int)
    t.add_argument("--ids", required=True, help="Comma separated layer ids, newest first")
    t.add_argument("-o", "--out", default="out/tile.png")

    th = sub.add_parser("thumb", help="Download one thumbnail")
    th.add_argument("layer_id")
    th.add_argument("-o", "--out", default="out/thumb.png")

    args = ap.parse_args()
    cfg = load_config(args.config)
    setup_logging("DEBUG" if args.debug else cfg.get("logging", {}).get("level"), force=True)

    keys = APIKeyStore(initial=cfg["keys"].get("api_key"), path=cfg["keys"].get("path"))
    gateway = ProviderGateway.from_config(cfg, keys.get)
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)

    t0 = time.time()
    try:
        with RequestContext.background() as ctx:
            if args.cmd == "tile":
                ids = [s.strip() for s in args.ids.split(",") if s.strip()]
                compositor = TileCompositor(gateway, timeout_s=cfg["compositor"]["timeout_s"])
                img = compositor.fetch_and_composite(ctx, ids, TileCoord(args.z, args.x, args.y))
                img.save(out, format="PNG")
            else:
                with out.open("wb") as f:
                    relay_thumbnail(gateway, ctx, args.layer_id, f)
    except ImageryError as e:
        log.error("%s failed: %s", args.cmd, e, extra={"error": e.code})
        return 1

    log.info("Saved %s (%d bytes, %dms)", out, out.stat().st_size, int((time.time() - t0) * 1000))
    return 0


if __name__ == "__main__":
    sys.exit(main())
