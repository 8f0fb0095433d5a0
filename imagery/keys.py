from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path
from typing import Optional

from common.context import RequestContext
from common.errors import MissingAPIKeyError, RequestBuildError


log = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


class APIKeyStore:
    """
    Holds the provider API key for the process.

    Start-up precedence: `initial` arg, env PLANET_API_KEY, file at `path`.
    `set()` replaces the key at runtime and persists it to `path` (mode 0600)
    when a path is configured.
    """

    def __init__(self, initial: Optional[str] = None, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._key = initial or os.getenv("PLANET_API_KEY") or self._load()

    def get(self, ctx: Optional[RequestContext] = None) -> str:
        with self._lock:
            key = self._key
        if not key:
            raise MissingAPIKeyError(
                "Provider API key is not configured. "
                "Set PLANET_API_KEY or POST it to /api/key"
            )
        return key

    def set(self, key: str) -> None:
        key = (key or "").strip()
        if not _KEY_RE.match(key):
            raise RequestBuildError("api key must be 8-128 characters of [A-Za-z0-9_-]")
        with self._lock:
            self._key = key
            if self.path is not None:
                self._persist(key)
        log.info("API key updated")

    @property
    def configured(self) -> bool:
        with self._lock:
            return bool(self._key)

    # -------- internals --------

    def _load(self) -> Optional[str]:
        if self.path is None or not self.path.is_file():
            return None
        key = self.path.read_text().strip()
        return key or None

    def _persist(self, key: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(key + "\n")
