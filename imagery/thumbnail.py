from __future__ import annotations

import logging
from typing import BinaryIO

from common.context import RequestContext
from imagery.compositor import FETCH_TIMEOUT_S
from imagery.gateway import ProviderGateway, ThumbnailStream


log = logging.getLogger(__name__)


def open_thumbnail(
    gateway: ProviderGateway,
    parent_ctx: RequestContext,
    layer_id: str,
    timeout_s: float = FETCH_TIMEOUT_S,
) -> ThumbnailStream:
    """
    Open a thumbnail under its own deadline. Provider errors surface here,
    before any byte is relayed; closing the stream releases the deadline.
    """
    ctx = parent_ctx.with_timeout(timeout_s)
    try:
        stream = gateway.fetch_thumbnail(ctx, layer_id)
    except BaseException:
        ctx.cancel()
        raise
    stream.on_close(ctx.cancel)
    return stream


def relay_thumbnail(
    gateway: ProviderGateway,
    parent_ctx: RequestContext,
    layer_id: str,
    sink: BinaryIO,
    timeout_s: float = FETCH_TIMEOUT_S,
) -> int:
    """Copy the provider's thumbnail bytes verbatim into `sink`. Returns bytes written."""
    written = 0
    with open_thumbnail(gateway, parent_ctx, layer_id, timeout_s) as stream:
        for chunk in stream:
            sink.write(chunk)
            written += len(chunk)
    log.debug("Relayed thumb %r (%d bytes)", layer_id, written, extra={"layer_id": layer_id})
    return written
