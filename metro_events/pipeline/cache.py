"""Catalog version counter that read-side caches key on."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

from metro_events.common.logging import get_logger, log_event

if TYPE_CHECKING:
    from metro_events.pipeline.store import EventStore

Subscriber = Callable[[int, str], None]


class CacheInvalidator:
    """Bumps the catalog version and notifies in-process subscribers.

    With a ``store`` the version lives in the catalog itself, so a batch run
    in one process invalidates caches held by a server in another. Without
    one the counter is process-local.
    """

    def __init__(self, logger: logging.Logger | None = None, *, store: EventStore | None = None) -> None:
        self._version = 0
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self.store = store
        self.logger = logger or get_logger("cache")

    @property
    def version(self) -> int:
        if self.store is not None:
            return self.store.catalog_version()
        with self._lock:
            return self._version

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def invalidate(self, reason: str) -> int:
        with self._lock:
            if self.store is not None:
                version = self.store.bump_catalog_version()
            else:
                self._version += 1
                version = self._version
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(version, reason)
            except Exception:
                self.logger.exception("cache subscriber failed for version %s", version)

        log_event(self.logger, f"catalog version {version}: {reason}", stage="persist", event="CACHE_INVALIDATED", status="ok")
        return version


class VersionedCache:
    """Memoises values per catalog version; a bump anywhere drops everything."""

    def __init__(self, invalidator: CacheInvalidator) -> None:
        self.invalidator = invalidator
        self._entries: dict[str, tuple[int, object]] = {}
        self._lock = threading.Lock()
        invalidator.subscribe(self._on_invalidate)

    def _on_invalidate(self, version: int, reason: str) -> None:
        with self._lock:
            self._entries.clear()

    def get_or_compute(self, key: str, compute: Callable[[], object]) -> object:
        # Entries from an older version are stale even if no subscriber fired.
        version = self.invalidator.version
        with self._lock:
            cached = self._entries.get(key)
        if cached is not None and cached[0] == version:
            return cached[1]
        value = compute()
        with self._lock:
            self._entries[key] = (version, value)
        return value
