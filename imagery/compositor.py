from __future__ import annotations

"""
Multi-layer tile compositor.

Fans out one worker thread per layer id, keeps the first failure (cancelling
the siblings through the shared context), joins every worker, then draws the
layers oldest-to-newest with alpha-over so the newest capture ends on top.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Sequence

from PIL import Image

from common.context import RequestContext
from common.errors import IntegrityError, LayerFetchError
from common.types import TILE_SIZE, TileCoord
from imagery.gateway import ProviderGateway


log = logging.getLogger(__name__)

FETCH_TIMEOUT_S = 15.0


def blank_image(size: int = TILE_SIZE) -> Image.Image:
    """Fully transparent RGBA tile."""
    return Image.new("RGBA", (size, size), (0, 0, 0, 0))


class _FirstError:
    """Single-slot error holder; only the first set() wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._err: Optional[LayerFetchError] = None

    def set(self, err: LayerFetchError) -> bool:
        with self._lock:
            if self._err is not None:
                return False
            self._err = err
            return True

    def get(self) -> Optional[LayerFetchError]:
        with self._lock:
            return self._err


def composite(layer_ids: Sequence[str], images: Dict[str, Image.Image]) -> Image.Image:
    """
    Alpha-over composite of `images` in reverse `layer_ids` order.

    `layer_ids` is newest-first, so walking it backwards leaves index 0 on top.
    Every layer must have exactly the bounds of the first one drawn.
    """
    out: Optional[Image.Image] = None
    for layer_id in reversed(layer_ids):
        img = images.get(layer_id)
        if img is None:
            raise IntegrityError(f"internal: layer {layer_id!r} missing from fetch results")
        if out is None:
            out = Image.new("RGBA", img.size, (0, 0, 0, 0))
        if img.size != out.size:
            raise IntegrityError(f"bounds mismatch, {out.size} vs {img.size} (layer {layer_id!r})")
        out.alpha_composite(img if img.mode == "RGBA" else img.convert("RGBA"))
    if out is None:
        raise IntegrityError("internal: composite reached with no layers")
    return out


class TileCompositor:
    def __init__(self, gateway: ProviderGateway, timeout_s: float = FETCH_TIMEOUT_S):
        self.gateway = gateway
        self.timeout_s = float(timeout_s)

    def fetch_and_composite(
        self,
        parent_ctx: RequestContext,
        layer_ids: Sequence[str],
        tile: TileCoord,
    ) -> Image.Image:
        """
        Fetch every layer of `tile` concurrently and composite them.

        Params:
            parent_ctx: caller's context; its cancellation aborts the fetch
            layer_ids: newest-first layer ids (duplicates are fetched once)
            tile: tile coordinate shared by all layers

        Returns:
            RGBA image; fully transparent TILE_SIZE square for an empty list.

        Raises:
            LayerFetchError: first failing layer (cause holds the classified error)
            IntegrityError: layers disagree on bounds
        """
        layer_ids = list(layer_ids)
        if not layer_ids:
            return blank_image()

        t0 = time.perf_counter()
        with parent_ctx.with_timeout(self.timeout_s) as ctx:
            results: Dict[str, Image.Image] = {}
            lock = threading.Lock()
            first_err = _FirstError()

            def _worker(layer_id: str) -> None:
                try:
                    img = self.gateway.fetch_tile(ctx, layer_id, tile)
                except Exception as e:
                    # handed to the caller through first_err; siblings are cancelled
                    if first_err.set(LayerFetchError(layer_id, e)):
                        log.warning(
                            "Tile %s layer %r failed, cancelling siblings: %s", tile, layer_id, e,
                            extra={"layer_id": layer_id, "tile": str(tile), "error": type(e).__name__},
                        )
                        ctx.cancel(f"sibling layer {layer_id!r} failed")
                    else:
                        log.debug("Discarding later error for layer %r: %s", layer_id, e)
                    return
                with lock:
                    results[layer_id] = img

            threads: List[threading.Thread] = []
            for layer_id in dict.fromkeys(layer_ids):
                t = threading.Thread(target=_worker, args=(layer_id,), name=f"tile-{layer_id}", daemon=True)
                t.start()
                threads.append(t)
            for t in threads:
                t.join()

        err = first_err.get()
        if err is not None:
            raise err from err.cause

        out = composite(layer_ids, results)
        log.debug(
            "Composited %d layers for tile %s", len(layer_ids), tile,
            extra={"tile": str(tile), "elapsed_ms": int((time.perf_counter() - t0) * 1000)},
        )
        return out
