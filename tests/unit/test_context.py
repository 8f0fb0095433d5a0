"""
Unit tests for request contexts and tile coordinates
"""

import threading
import time

import pytest

from common.context import RequestContext
from common.errors import Cancelled, DeadlineExceeded
from common.types import TileCoord


class TestRequestContext:
    def test_background_never_expires(self):
        ctx = RequestContext.background()
        assert ctx.remaining() is None
        assert not ctx.done()
        ctx.raise_if_done()

    def test_child_takes_tighter_deadline(self):
        parent = RequestContext.background().with_timeout(0.5)
        child = parent.with_timeout(60)
        assert child.deadline == parent.deadline
        assert child.remaining() <= 0.5

    def test_parent_cancel_propagates(self):
        parent = RequestContext.background()
        child = parent.with_timeout(10)
        grandchild = child.with_cancel()

        parent.cancel()

        assert child.done() and grandchild.done()
        with pytest.raises(Cancelled):
            grandchild.raise_if_done()

    def test_child_cancel_does_not_touch_parent(self):
        parent = RequestContext.background()
        child = parent.with_timeout(10)
        child.cancel()
        assert child.done()
        assert not parent.done()

    def test_child_of_done_parent_is_done(self):
        parent = RequestContext.background()
        parent.cancel()
        assert parent.with_timeout(5).done()

    def test_deadline_wakes_waiters(self):
        ctx = RequestContext.background().with_timeout(0.1)
        t0 = time.perf_counter()
        assert ctx.wait(5.0)
        assert time.perf_counter() - t0 < 2.0
        assert isinstance(ctx.err(), DeadlineExceeded)
        with pytest.raises(DeadlineExceeded):
            ctx.raise_if_done()

    def test_cancel_wakes_other_thread(self):
        ctx = RequestContext.background()
        woke = []
        t = threading.Thread(target=lambda: woke.append(ctx.wait(5.0)))
        t.start()
        ctx.cancel()
        t.join(2.0)
        assert woke == [True]

    def test_first_reason_sticks(self):
        ctx = RequestContext.background().with_timeout(10)
        ctx.cancel("sibling failed")
        ctx.cancel("second")
        assert "sibling failed" in str(ctx.err())
        assert not isinstance(ctx.err(), DeadlineExceeded)

    def test_with_block_cancels(self):
        with RequestContext.background().with_timeout(10) as ctx:
            assert not ctx.done()
        assert ctx.done()

    def test_raise_if_done_gives_fresh_exception(self):
        ctx = RequestContext.background()
        ctx.cancel()
        with pytest.raises(Cancelled) as first:
            ctx.raise_if_done()
        with pytest.raises(Cancelled) as second:
            ctx.raise_if_done()
        assert first.value is not second.value

    def test_on_done_callbacks(self):
        parent = RequestContext.background()
        child = parent.with_timeout(60)
        fired = []
        child.on_done(lambda: fired.append("kept"))
        unregister = child.on_done(lambda: fired.append("dropped"))
        unregister()

        parent.cancel()
        assert fired == ["kept"]

        child.on_done(lambda: fired.append("late"))
        assert fired == ["kept", "late"]


class TestTileCoord:
    def test_valid(self):
        t = TileCoord(3, 7, 0)
        assert t.zxy == (3, 7, 0)
        assert str(t) == "3/7/0"
        assert t.to_dict() == {"z": 3, "x": 7, "y": 0}

    @pytest.mark.parametrize("z,x,y", [(-1, 0, 0), (0, 1, 0), (3, 8, 0), (3, 0, 8), (2, -1, 0)])
    def test_out_of_range(self, z, x, y):
        with pytest.raises(ValueError):
            TileCoord(z, x, y)

    def test_rejects_non_int(self):
        with pytest.raises(TypeError):
            TileCoord(3, 1.5, 0)

    def test_immutable(self):
        t = TileCoord(1, 0, 0)
        with pytest.raises(AttributeError):
            t.z = 2
