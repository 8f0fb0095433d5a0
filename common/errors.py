from __future__ import annotations

"""
Error taxonomy shared by the gateway, the compositor and the HTTP surface.

Each class carries a stable `code` that shows up in JSON logs and in the
`{"error": code}` bodies returned by imagery.server.
"""

from typing import Optional


class ImageryError(Exception):
    code = "imagery_error"


class RequestBuildError(ImageryError, ValueError):
    """Request could not be constructed (bad layer id, bad tile)."""
    code = "bad_request"


class MissingAPIKeyError(ImageryError):
    code = "api_key_missing"


class TransportError(ImageryError):
    """Network-level failure; the underlying exception is chained as __cause__."""
    code = "transport_error"


class ProviderError(ImageryError):
    """Provider answered with a non-2xx status (after client retries)."""
    code = "provider_error"

    def __init__(self, what: str, status_code: int, reason: str = "", body: str = ""):
        self.what = what
        self.status_code = int(status_code)
        self.reason = reason
        self.body = body
        super().__init__(f"{what} {self.status_code} {reason}: {body!r}")


class DecodeError(ImageryError):
    code = "decode_error"


class IntegrityError(ImageryError):
    """Composite inputs disagree (bounds) or bookkeeping lost a layer."""
    code = "integrity_error"


class LayerFetchError(ImageryError):
    """Failure of one layer in a multi-layer fetch."""

    def __init__(self, layer_id: str, cause: Exception):
        self.layer_id = layer_id
        self.cause = cause
        super().__init__(f"{cause}: fetching tile {layer_id!r}")

    @property
    def code(self) -> str:  # type: ignore[override]
        return getattr(self.cause, "code", ImageryError.code)


class Cancelled(ImageryError):
    code = "cancelled"


class DeadlineExceeded(Cancelled):
    code = "deadline_exceeded"


def root_cause(exc: Optional[BaseException]) -> Optional[BaseException]:
    """Unwrap LayerFetchError layers to the classified error underneath."""
    while isinstance(exc, LayerFetchError):
        exc = exc.cause
    return exc
