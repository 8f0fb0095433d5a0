"""
Unit tests for the multi-layer tile compositor
"""

import threading
import time
from unittest.mock import Mock

import numpy as np
import pytest
from PIL import Image

from common.context import RequestContext
from common.errors import (
    Cancelled,
    DeadlineExceeded,
    IntegrityError,
    LayerFetchError,
    ProviderError,
)
from common.types import TILE_SIZE, TileCoord
from imagery.compositor import TileCompositor, blank_image, composite


TILE = TileCoord(3, 1, 1)
RED = (255, 0, 0, 255)
BLUE = (0, 0, 255, 255)


class FakeGateway:
    """
    Stands in for ProviderGateway.fetch_tile. `behaviour[layer_id]` is an
    Image (returned), an Exception (raised) or a callable(ctx) -> Image.
    """

    def __init__(self, behaviour):
        self.behaviour = behaviour
        self.calls = []
        self.finished = []
        self._lock = threading.Lock()

    def fetch_tile(self, ctx, layer_id, tile):
        with self._lock:
            self.calls.append(layer_id)
        try:
            b = self.behaviour[layer_id]
            if isinstance(b, Exception):
                raise b
            if callable(b):
                return b(ctx)
            return b
        finally:
            with self._lock:
                self.finished.append(layer_id)


def _slow(ctx, limit=5.0):
    """Block until the context is done, like an in-flight request observing cancellation."""
    ctx.wait(limit)
    ctx.raise_if_done()
    return Image.new("RGBA", (TILE_SIZE, TILE_SIZE), BLUE)


class TestEmpty:
    def test_empty_list_is_transparent_without_io(self):
        """No ids -> transparent tile, gateway untouched"""
        gw = Mock()
        out = TileCompositor(gw).fetch_and_composite(RequestContext.background(), [], TILE)

        assert out.size == (TILE_SIZE, TILE_SIZE)
        assert out.mode == "RGBA"
        assert not np.asarray(out).any()
        gw.fetch_tile.assert_not_called()

    def test_blank_image(self):
        assert blank_image().getpixel((0, 0)) == (0, 0, 0, 0)


class TestCompositeOrder:
    def test_newest_opaque_layer_wins(self):
        """["new", "old"]: red new fully covers blue old"""
        gw = FakeGateway({
            "new": Image.new("RGBA", (256, 256), RED),
            "old": Image.new("RGBA", (256, 256), BLUE),
        })
        out = TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["new", "old"], TILE)

        arr = np.asarray(out)
        assert arr.shape == (256, 256, 4)
        assert (arr == np.array(RED, dtype=np.uint8)).all()
        assert sorted(gw.calls) == ["new", "old"]

    def test_transparent_regions_show_older_layers(self):
        """Newest layer with a transparent half lets the older layer through"""
        new = Image.new("RGBA", (256, 256), (0, 0, 0, 0))
        new.paste(Image.new("RGBA", (128, 256), RED), (128, 0))
        gw = FakeGateway({"new": new, "old": Image.new("RGBA", (256, 256), BLUE)})

        out = TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["new", "old"], TILE)

        assert out.getpixel((10, 10)) == BLUE
        assert out.getpixel((200, 10)) == RED

    def test_matches_alpha_over_reference(self):
        """Semi-transparent layers blend oldest -> newest"""
        a = Image.new("RGBA", (256, 256), (255, 0, 0, 128))
        b = Image.new("RGBA", (256, 256), (0, 255, 0, 200))
        c = Image.new("RGBA", (256, 256), (0, 0, 255, 255))
        gw = FakeGateway({"a": a, "b": b, "c": c})

        out = TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["a", "b", "c"], TILE)

        base = Image.new("RGBA", (256, 256), (0, 0, 0, 0))
        expected = Image.alpha_composite(Image.alpha_composite(Image.alpha_composite(base, c), b), a)
        np.testing.assert_array_equal(np.asarray(out), np.asarray(expected))

    def test_rgb_layers_are_promoted(self):
        gw = FakeGateway({"new": Image.new("RGB", (256, 256), (9, 9, 9))})
        out = TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["new"], TILE)
        assert out.mode == "RGBA"
        assert out.getpixel((0, 0)) == (9, 9, 9, 255)

    def test_duplicate_ids_fetched_once(self):
        gw = FakeGateway({"a": Image.new("RGBA", (256, 256), RED)})
        TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["a", "a"], TILE)
        assert gw.calls == ["a"]


class TestConcurrency:
    def test_layers_fetched_in_parallel(self):
        """All three fetches must be in flight at once to pass the barrier"""
        barrier = threading.Barrier(3, timeout=5)

        def _meet(ctx):
            barrier.wait()
            return Image.new("RGBA", (256, 256), RED)

        gw = FakeGateway({"a": _meet, "b": _meet, "c": _meet})
        out = TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["a", "b", "c"], TILE)
        assert out.getpixel((0, 0)) == RED

    def test_first_error_cancels_and_joins_siblings(self):
        """One failure -> wrapped error, siblings cancelled and finished before return"""
        err = ProviderError("tile bad", 404, "Not Found", "no such item")
        gw = FakeGateway({"bad": err, "slow1": _slow, "slow2": _slow})

        t0 = time.perf_counter()
        with pytest.raises(LayerFetchError) as ei:
            TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["slow1", "bad", "slow2"], TILE)
        elapsed = time.perf_counter() - t0

        assert ei.value.layer_id == "bad"
        assert ei.value.cause is err
        assert "bad" in str(ei.value)
        assert sorted(gw.finished) == ["bad", "slow1", "slow2"]
        assert elapsed < 4.0

    def test_only_first_error_kept(self):
        """The sibling's cancellation error is discarded"""
        err = ProviderError("tile a", 500, "Server Error", "")

        def _fail_late(ctx):
            ctx.wait(5.0)
            raise ProviderError("tile b", 503, "Unavailable", "")

        gw = FakeGateway({"a": err, "b": _fail_late})
        with pytest.raises(LayerFetchError) as ei:
            TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["a", "b"], TILE)

        assert ei.value.layer_id == "a"
        assert ei.value.cause.status_code == 500

    def test_parent_cancellation_returns_promptly(self):
        gw = FakeGateway({"a": _slow, "b": _slow})
        parent = RequestContext.background()
        threading.Timer(0.1, parent.cancel).start()

        t0 = time.perf_counter()
        with pytest.raises(LayerFetchError) as ei:
            TileCompositor(gw).fetch_and_composite(parent, ["a", "b"], TILE)

        assert isinstance(ei.value.cause, Cancelled)
        assert not isinstance(ei.value.cause, DeadlineExceeded)
        assert time.perf_counter() - t0 < 3.0
        assert sorted(gw.finished) == ["a", "b"]

    def test_deadline_bounds_the_call(self):
        gw = FakeGateway({"a": _slow})
        t0 = time.perf_counter()
        with pytest.raises(LayerFetchError) as ei:
            TileCompositor(gw, timeout_s=0.2).fetch_and_composite(RequestContext.background(), ["a"], TILE)

        assert isinstance(ei.value.cause, DeadlineExceeded)
        assert time.perf_counter() - t0 < 3.0

    def test_shared_context_carries_deadline(self):
        seen = []

        def _capture(ctx):
            seen.append(ctx.remaining())
            return Image.new("RGBA", (256, 256), RED)

        gw = FakeGateway({"a": _capture})
        TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["a"], TILE)
        assert seen and 0 < seen[0] <= 15.0


class TestIntegrity:
    def test_bounds_mismatch(self):
        gw = FakeGateway({
            "new": Image.new("RGBA", (256, 256), RED),
            "old": Image.new("RGBA", (512, 512), BLUE),
        })
        with pytest.raises(IntegrityError, match="bounds mismatch"):
            TileCompositor(gw).fetch_and_composite(RequestContext.background(), ["new", "old"], TILE)

    def test_missing_layer_is_request_scoped_error(self):
        with pytest.raises(IntegrityError, match="missing"):
            composite(["a", "b"], {"a": Image.new("RGBA", (256, 256), RED)})

    def test_empty_composite_set(self):
        with pytest.raises(IntegrityError):
            composite([], {})
