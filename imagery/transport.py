from __future__ import annotations

"""
requests/urllib3 plumbing that makes the retrying connection pools obey a
RequestContext.

- ContextRetry: a urllib3 Retry that stops retrying once the context is done
  and sleeps its backoff on the context, so cancellation cuts the sleep short.
- ConnectionWatch: records the connections a request checks out; when the
  context finishes, their sockets are shut down, which unblocks a read stuck
  on a provider that accepted the connection but never answers.
- ContextAwareAdapter: HTTPAdapter whose pools wire both of the above in for
  any session.get() issued inside `ConnectionWatch.active()`.

Requests made outside an active watch behave like a plain retrying session.
"""

import logging
import socket
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Set

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import MaxRetryError, ResponseError
from urllib3.util.retry import Retry

from common.context import RequestContext


log = logging.getLogger(__name__)

_local = threading.local()


def _active_watch() -> Optional["ConnectionWatch"]:
    return getattr(_local, "watch", None)


def _shutdown(sock) -> None:
    try:
        # plain socket shutdown; leaves an SSLSocket's own state alone
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError:
        pass  # already closed


class ContextRetry(Retry):
    """Retry bound (per request) to a RequestContext. Unbound it is a plain Retry."""

    ctx: Optional[RequestContext] = None

    def new(self, **kw) -> "ContextRetry":
        r = super().new(**kw)
        r.ctx = self.ctx
        return r

    def bind(self, ctx: RequestContext) -> "ContextRetry":
        r = self.new()
        r.ctx = ctx
        return r

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        if self.ctx is not None and self.ctx.done():
            reason = error or ResponseError(f"not retrying: {self.ctx.err()}")
            raise MaxRetryError(_pool, url, reason) from reason
        return super().increment(
            method=method, url=url, response=response, error=error, _pool=_pool, _stacktrace=_stacktrace
        )

    def sleep(self, response=None) -> None:
        if self.ctx is None:
            super().sleep(response)
            return
        delay = None
        if response is not None and self.respect_retry_after_header:
            delay = self.get_retry_after(response)
        if delay is None:
            delay = self.get_backoff_time()
        if delay > 0:
            # returns early on cancellation; the next increment() gives up
            self.ctx.wait(delay)


class ConnectionWatch:
    def __init__(self, ctx: RequestContext):
        self.ctx = ctx
        self._lock = threading.Lock()
        self._conns: Set = set()
        self._unregister = ctx.on_done(self.abort)

    def attach(self, conn) -> None:
        with self._lock:
            conn._imagery_watch = self
            self._conns.add(conn)

    def detach(self, conn) -> None:
        with self._lock:
            self._conns.discard(conn)
            if getattr(conn, "_imagery_watch", None) is self:
                conn._imagery_watch = None

    def abort(self) -> None:
        with self._lock:
            for conn in self._conns:
                sock = getattr(conn, "sock", None)
                if sock is None:
                    continue
                _shutdown(sock)
                log.debug("Aborted in-flight connection: %s", self.ctx.err())

    def release(self) -> None:
        """Stop watching: the request is over, its connections may be reused."""
        self._unregister()
        with self._lock:
            for conn in self._conns:
                if getattr(conn, "_imagery_watch", None) is self:
                    conn._imagery_watch = None
            self._conns.clear()

    @contextmanager
    def active(self) -> Iterator["ConnectionWatch"]:
        prev = _active_watch()
        _local.watch = self
        try:
            yield self
        finally:
            _local.watch = prev


class _WatchedConnectionMixin:
    _imagery_watch: Optional["ConnectionWatch"] = None

    def connect(self) -> None:
        super().connect()
        # connected after the context finished: abort() found no socket
        watch = self._imagery_watch
        if watch is not None and watch.ctx.done() and self.sock is not None:
            _shutdown(self.sock)


class WatchedHTTPConnection(_WatchedConnectionMixin, HTTPConnection):
    pass


class WatchedHTTPSConnection(_WatchedConnectionMixin, HTTPSConnection):
    pass


class _WatchedPoolMixin:
    def _get_conn(self, timeout=None):
        conn = super()._get_conn(timeout)
        watch = _active_watch()
        if watch is not None:
            watch.attach(conn)
        return conn

    def _put_conn(self, conn) -> None:
        # detach before the pool can hand it to another request
        watch = getattr(conn, "_imagery_watch", None) if conn is not None else None
        if watch is not None:
            watch.detach(conn)
        super()._put_conn(conn)

    def urlopen(self, method, url, *args, **kwargs):
        watch = _active_watch()
        if watch is not None and watch.ctx.done():
            # retries re-enter here after their backoff sleep
            raise MaxRetryError(self, url, ResponseError(f"not retrying: {watch.ctx.err()}"))
        retries = kwargs.get("retries")
        if watch is not None and isinstance(retries, ContextRetry) and retries.ctx is None:
            kwargs["retries"] = retries.bind(watch.ctx)
        return super().urlopen(method, url, *args, **kwargs)


class WatchedHTTPConnectionPool(_WatchedPoolMixin, HTTPConnectionPool):
    ConnectionCls = WatchedHTTPConnection


class WatchedHTTPSConnectionPool(_WatchedPoolMixin, HTTPSConnectionPool):
    ConnectionCls = WatchedHTTPSConnection


class ContextAwareAdapter(HTTPAdapter):
    def init_poolmanager(self, *args, **kwargs) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": WatchedHTTPConnectionPool,
            "https": WatchedHTTPSConnectionPool,
        }


def make_retry(
    total: int = 4,
    backoff_factor: float = 0.5,
    status_forcelist=(500, 502, 503, 504),
) -> ContextRetry:
    return ContextRetry(
        total=total,
        connect=total,
        read=total,
        status=total,
        backoff_factor=backoff_factor,
        status_forcelist=tuple(status_forcelist),
        allowed_methods=frozenset({"GET"}),
        # hand the last 5xx back to us instead of raising MaxRetryError
        raise_on_status=False,
    )


def make_session(retry: Optional[Retry] = None, pool_size: int = 32) -> requests.Session:
    session = requests.Session()
    adapter = ContextAwareAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        max_retries=retry if retry is not None else make_retry(),
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session
