from __future__ import annotations

"""
Request-scoped deadline + cancellation signal.

A RequestContext is created per top-level call and shared by every
sub-operation of that call. Children inherit the parent's cancellation and
the tighter of the two deadlines:

    with RequestContext.background().with_timeout(15.0) as ctx:
        gateway.fetch_tile(ctx, "20240101_abc", tile)

Leaving the `with` block cancels the context and stops its timer.
Cancellation is cooperative: workers call `raise_if_done()` (or look at
`remaining()` to cap their own I/O timeouts).
"""

import threading
import time
from typing import Callable, List, Optional

from common.errors import Cancelled, DeadlineExceeded


class RequestContext:
    def __init__(self, deadline: Optional[float] = None, parent: Optional["RequestContext"] = None):
        """
        Params:
            deadline: absolute time.monotonic() value, or None for no deadline
            parent: context whose cancellation propagates into this one
        """
        self._deadline = deadline
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._err: Optional[Cancelled] = None
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        self._unlink: Optional[Callable[[], None]] = None
        self._parent = parent

        if parent is not None:
            self._unlink = parent.on_done(self._propagate)

        if deadline is not None:
            delay = deadline - time.monotonic()
            if delay <= 0:
                self._finish(DeadlineExceeded("context deadline exceeded"))
            else:
                with self._lock:
                    if self._err is None:
                        self._timer = threading.Timer(delay, self._expire)
                        self._timer.daemon = True
                        self._timer.start()

    @classmethod
    def background(cls) -> "RequestContext":
        """Root context: never expires, cancelled only explicitly."""
        return cls()

    # ----------------------------
    # Derivation
    # ----------------------------
    def with_timeout(self, seconds: float) -> "RequestContext":
        deadline = time.monotonic() + float(seconds)
        if self._deadline is not None:
            deadline = min(deadline, self._deadline)
        return RequestContext(deadline=deadline, parent=self)

    def with_cancel(self) -> "RequestContext":
        return RequestContext(deadline=self._deadline, parent=self)

    # ----------------------------
    # State
    # ----------------------------
    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (never negative), None if unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> Optional[Cancelled]:
        with self._lock:
            err = self._err
        if err is None and self._deadline is not None and time.monotonic() >= self._deadline:
            self._expire()
            with self._lock:
                err = self._err
        return err

    def done(self) -> bool:
        return self.err() is not None

    def raise_if_done(self) -> None:
        err = self.err()
        if err is not None:
            # fresh instance per raise; the stored one is shared across threads
            raise type(err)(*err.args)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context is done or `timeout` elapses. Returns done()."""
        self._event.wait(timeout)
        return self.done()

    def cancel(self, reason: str = "context canceled") -> None:
        self._finish(Cancelled(reason))

    def on_done(self, cb: Callable[[], None]) -> Callable[[], None]:
        """
        Run `cb` once this context is done (immediately if it already is),
        on the thread that finishes it. Returns an unregister function.
        """
        with self._lock:
            if self._err is None:
                self._callbacks.append(cb)
                return lambda: self._remove_callback(cb)
        cb()
        return lambda: None

    def __enter__(self) -> "RequestContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.cancel()
        return False

    # ----------------------------
    # Internals
    # ----------------------------
    def _expire(self) -> None:
        self._finish(DeadlineExceeded("context deadline exceeded"))

    def _propagate(self) -> None:
        parent_err = self._parent.err() if self._parent is not None else None
        if parent_err is None:
            parent_err = Cancelled("context canceled")
        self._finish(type(parent_err)(*parent_err.args))

    def _remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(cb)
            except ValueError:
                pass

    def _finish(self, err: Cancelled) -> None:
        with self._lock:
            if self._err is not None:
                return
            self._err = err
            callbacks, self._callbacks = self._callbacks, []
            timer, self._timer = self._timer, None
        self._event.set()
        if timer is not None:
            timer.cancel()
        if self._unlink is not None:
            self._unlink()
        for cb in callbacks:
            cb()
