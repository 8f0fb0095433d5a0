from __future__ import annotations

"""
Provider gateway: authenticated tile/thumbnail requests against the imagery
provider's sharded tile hosts.

Usage:
    gw = ProviderGateway(api_key=keys.get)
    with RequestContext.background().with_timeout(15.0) as ctx:
        img = gw.fetch_tile(ctx, "20240101_101010_0f22", TileCoord(12, 1205, 1539))
        with gw.fetch_thumbnail(ctx, "20240101_101010_0f22") as stream:
            for chunk in stream:
                ...

Retries are not hand-rolled: the requests.Session carries an HTTPAdapter whose
urllib3 Retry policy re-issues GETs on connection errors and 5xx responses
with exponential backoff. 4xx answers come back on the first attempt.
Every request runs under a ConnectionWatch (imagery.transport), so retries
stop and in-flight sockets are shut down as soon as the context is done.
"""

import io
import logging
import random
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from PIL import Image, UnidentifiedImageError
from urllib3.util.retry import Retry

from common.context import RequestContext
from common.errors import (
    DecodeError,
    DeadlineExceeded,
    ImageryError,
    ProviderError,
    RequestBuildError,
    TransportError,
)
from common.types import TileCoord
from imagery.transport import ConnectionWatch, make_retry, make_session


log = logging.getLogger(__name__)

_LAYER_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_API_KEY_RE = re.compile(r"(api_key=)[^&]+")

ERROR_BODY_LIMIT = 1024  # bytes of a non-2xx body kept for diagnostics
CHUNK_SIZE = 64 * 1024



def redact(url: str) -> str:
    return _API_KEY_RE.sub(r"\1REDACTED", url)


def decode_png(data: bytes, what: str) -> Image.Image:
    """Decode PNG bytes fully into memory. Anything else is a DecodeError."""
    try:
        img = Image.open(io.BytesIO(data))
        fmt = img.format
        if fmt == "PNG":
            img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"{what}: png decode: {e}") from e
    if fmt != "PNG":
        raise DecodeError(f"{what}: expected PNG, got {fmt}")
    return img


def _transport_error(ctx: RequestContext, what: str, exc: Exception) -> ImageryError:
    # A timeout caused by our own deadline reads better as the deadline.
    err = ctx.err()
    if err is not None:
        return type(err)(f"{what}: {err}")
    return TransportError(f"http: {what}: {exc}")


class ThumbnailStream:
    """
    Open thumbnail response. Iterating yields the body verbatim in chunks;
    the context is checked between chunks. Always close() (or use `with`).
    """

    def __init__(self, ctx: RequestContext, response: requests.Response, what: str, chunk_size: int = CHUNK_SIZE):
        self._ctx = ctx
        self._response = response
        self._what = what
        self._chunk_size = chunk_size
        self._on_close: List[Callable[[], None]] = []
        self._closed = False

    @property
    def content_type(self) -> str:
        return self._response.headers.get("Content-Type") or "image/png"

    @property
    def content_length(self) -> Optional[int]:
        v = self._response.headers.get("Content-Length")
        return int(v) if v and v.isdigit() else None

    def on_close(self, cb: Callable[[], None]) -> None:
        self._on_close.append(cb)

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(self._chunk_size):
                self._ctx.raise_if_done()
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise _transport_error(self._ctx, self._what, e) from e
        # an aborted socket can end the body early without a read error
        self._ctx.raise_if_done()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()
        for cb in self._on_close:
            cb()

    def __enter__(self) -> "ThumbnailStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


class ProviderGateway:
    def __init__(
        self,
        api_key: Callable[[RequestContext], str],
        *,
        host: str = "planet.com",
        product_type: str = "PSScene",
        shards: int = 4,
        connect_timeout: float = 3.05,
        read_timeout: float = 10.0,
        retry: Optional[Retry] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the gateway.

        Params:
            api_key: accessor returning the provider API key for a request context
            host: provider domain; requests go to tiles{shard}.{host}
            product_type: catalog product tag placed in every URL
            shards: number of equivalent tile hosts, picked uniformly per request
            connect_timeout, read_timeout: per-attempt caps (seconds), further
                capped by the request context's remaining time
            retry: urllib3 Retry for the default session (ignored if session given)
            base_url: override for the tile host root, may contain "{shard}"
                (default "https://tiles{shard}.{host}")
            session: optional pre-built requests.Session
            rng: random source for shard selection
        """
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._api_key = api_key
        self.host = host
        self.base_url = base_url or f"https://tiles{{shard}}.{host}"
        self.product_type = product_type
        self.shards = int(shards)
        self.connect_timeout = float(connect_timeout)
        self.read_timeout = float(read_timeout)
        self.session = session or make_session(retry)
        self._rng = rng or random.Random()

    @classmethod
    def from_config(
        cls,
        cfg: Dict[str, Any],
        api_key: Callable[[RequestContext], str],
        session: Optional[requests.Session] = None,
    ) -> "ProviderGateway":
        p = cfg.get("provider", {})
        r = p.get("retry", {})
        retry = make_retry(
            total=int(r.get("total", 4)),
            backoff_factor=float(r.get("backoff_factor", 0.5)),
            status_forcelist=tuple(r.get("status_forcelist", (500, 502, 503, 504))),
        )
        return cls(
            api_key,
            host=p.get("host", "planet.com"),
            product_type=p.get("product_type", "PSScene"),
            shards=int(p.get("shards", 4)),
            connect_timeout=float(p.get("connect_timeout", 3.05)),
            read_timeout=float(p.get("read_timeout", 10.0)),
            retry=retry,
            base_url=p.get("base_url"),
            session=session,
        )

    # ----------------------------
    # URL construction (no request performed)
    # ----------------------------
    def pick_shard(self) -> int:
        return self._rng.randrange(self.shards)

    def build_tile_url(self, layer_id: str, tile: TileCoord, api_key: str, shard: Optional[int] = None) -> str:
        self._check_layer_id(layer_id)
        if not isinstance(tile, TileCoord):
            raise RequestBuildError(f"tile must be a TileCoord, got {type(tile).__name__}")
        shard = self.pick_shard() if shard is None else shard
        return (
            f"{self.base_url.format(shard=shard)}/data/v1/{self.product_type}/{layer_id}"
            f"/{tile.z}/{tile.x}/{tile.y}.png?{urlencode({'api_key': api_key})}"
        )

    def build_thumbnail_url(self, layer_id: str, api_key: str, shard: Optional[int] = None) -> str:
        self._check_layer_id(layer_id)
        shard = self.pick_shard() if shard is None else shard
        return (
            f"{self.base_url.format(shard=shard)}/data/v1/item-types/{self.product_type}"
            f"/items/{layer_id}/thumb?{urlencode({'api_key': api_key})}"
        )

    # ----------------------------
    # Public API
    # ----------------------------
    def fetch_tile(self, ctx: RequestContext, layer_id: str, tile: TileCoord) -> Image.Image:
        """
        Fetch one layer's tile and decode it.

        Raises:
            RequestBuildError, MissingAPIKeyError: before any I/O
            TransportError: network failure after client retries
            ProviderError: final non-2xx answer (status + bounded body)
            DecodeError: body is not a PNG
            Cancelled / DeadlineExceeded: ctx finished first
        """
        url = self.build_tile_url(layer_id, tile, self._api_key(ctx))
        what = f"tile {layer_id}"
        log.debug("Fetching tile %r", layer_id, extra={"layer_id": layer_id, "tile": str(tile)})
        res, watch = self._get(ctx, url, what)
        try:
            data = self._read_body(ctx, res, what)
        finally:
            res.close()
            watch.release()
        return decode_png(data, what)

    def fetch_thumbnail(self, ctx: RequestContext, layer_id: str) -> ThumbnailStream:
        """Open the thumbnail resource; bytes are relayed undecoded by the caller."""
        url = self.build_thumbnail_url(layer_id, self._api_key(ctx))
        what = f"thumb {layer_id}"
        log.debug("Fetching thumb %r", layer_id, extra={"layer_id": layer_id})
        res, watch = self._get(ctx, url, what)
        stream = ThumbnailStream(ctx, res, what)
        stream.on_close(watch.release)
        return stream

    # ----------------------------
    # HTTP helpers
    # ----------------------------
    @staticmethod
    def _check_layer_id(layer_id: str) -> None:
        if not isinstance(layer_id, str) or not _LAYER_ID_RE.match(layer_id):
            raise RequestBuildError(f"invalid layer id {layer_id!r}")

    def _timeouts(self, ctx: RequestContext) -> Tuple[float, float]:
        remaining = ctx.remaining()
        if remaining is None:
            return (self.connect_timeout, self.read_timeout)
        if remaining <= 0:
            raise DeadlineExceeded("context deadline exceeded")
        return (min(self.connect_timeout, remaining), min(self.read_timeout, remaining))

    def _get(self, ctx: RequestContext, url: str, what: str) -> Tuple[requests.Response, ConnectionWatch]:
        """
        Issue the GET under a ConnectionWatch for `ctx`. On success the caller
        owns both the open response and the watch and must release() it once
        the body is consumed.
        """
        ctx.raise_if_done()
        timeout = self._timeouts(ctx)
        watch = ConnectionWatch(ctx)
        try:
            with watch.active():
                res = self.session.get(url, timeout=timeout, stream=True)
        except requests.RequestException as e:
            watch.release()
            log.warning("%s: request to %s failed: %s", what, redact(url), e)
            raise _transport_error(ctx, what, e) from e
        except BaseException:
            watch.release()
            raise

        if ctx.done():
            # retries gave up early and handed back the last answer
            res.close()
            watch.release()
            ctx.raise_if_done()

        if not 200 <= res.status_code < 300:
            try:
                body = self._bounded_text(res)
            finally:
                res.close()
                watch.release()
            log.warning(
                "%s: provider returned %s %s",
                what, res.status_code, res.reason,
                extra={"status": res.status_code},
            )
            raise ProviderError(what, res.status_code, res.reason or "", body)
        return res, watch

    def _read_body(self, ctx: RequestContext, res: requests.Response, what: str) -> bytes:
        buf = io.BytesIO()
        try:
            for chunk in res.iter_content(CHUNK_SIZE):
                ctx.raise_if_done()
                buf.write(chunk)
        except requests.RequestException as e:
            raise _transport_error(ctx, what, e) from e
        ctx.raise_if_done()
        return buf.getvalue()

    @staticmethod
    def _bounded_text(res: requests.Response) -> str:
        raw = b""
        try:
            for chunk in res.iter_content(ERROR_BODY_LIMIT):
                raw += chunk
                if len(raw) >= ERROR_BODY_LIMIT:
                    break
        except requests.RequestException as e:
            return f"<body unreadable: {e}>"
        return raw[:ERROR_BODY_LIMIT].decode(res.encoding or "utf-8", errors="replace")
