"""Fixed-window request limiter with an injectable state store."""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Protocol


@dataclass
class WindowState:
    count: int
    reset_at: float


class RateLimitStore(Protocol):
    def get(self, key: str) -> WindowState | None: ...

    def put(self, key: str, state: WindowState) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> Iterator[tuple[str, WindowState]]: ...


class MemoryRateLimitStore:
    def __init__(self) -> None:
        self._entries: dict[str, WindowState] = {}

    def get(self, key: str) -> WindowState | None:
        return self._entries.get(key)

    def put(self, key: str, state: WindowState) -> None:
        self._entries[key] = state

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def items(self) -> Iterator[tuple[str, WindowState]]:
        return iter(list(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)


class FixedWindowRateLimiter:
    """Allows ``limit`` calls per key per window.

    Expired windows are replaced lazily on the next call for that key but are
    only removed from the store by :meth:`sweep`.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store if store is not None else MemoryRateLimitStore()
        self.clock = clock
        self.lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: dict, **kwargs) -> "FixedWindowRateLimiter":
        return cls(limit=int(cfg["limit"]), window_seconds=float(cfg["window_seconds"]), **kwargs)

    def is_limited(self, key: str) -> bool:
        with self.lock:
            now = self.clock()
            state = self.store.get(key)
            if state is None or now >= state.reset_at:
                self.store.put(key, WindowState(count=1, reset_at=now + self.window_seconds))
                return False
            if state.count >= self.limit:
                return True
            state.count += 1
            self.store.put(key, state)
            return False

    def sweep(self) -> int:
        removed = 0
        with self.lock:
            now = self.clock()
            for key, state in self.store.items():
                if now >= state.reset_at:
                    self.store.delete(key)
                    removed += 1
        return removed


class SqliteRateLimitStore:
    """Window table shared by every process pointed at the same database file.

    Pair it with a wall clock (``time.time``); monotonic readings are not
    comparable across processes.
    """

    SCHEMA = "CREATE TABLE IF NOT EXISTS rate_limits (key TEXT PRIMARY KEY, count INTEGER NOT NULL, reset_at REAL NOT NULL)"

    def __init__(self, path: str) -> None:
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.lock = threading.Lock()
        with self.lock, self.conn:
            self.conn.execute(self.SCHEMA)

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def get(self, key: str) -> WindowState | None:
        with self.lock:
            row = self.conn.execute("SELECT count, reset_at FROM rate_limits WHERE key = ?", (key,)).fetchone()
        return WindowState(count=row[0], reset_at=row[1]) if row else None

    def put(self, key: str, state: WindowState) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO rate_limits (key, count, reset_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET count = excluded.count, reset_at = excluded.reset_at",
                (key, state.count, state.reset_at),
            )

    def delete(self, key: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM rate_limits WHERE key = ?", (key,))

    def items(self) -> Iterator[tuple[str, WindowState]]:
        with self.lock:
            rows = self.conn.execute("SELECT key, count, reset_at FROM rate_limits ORDER BY key").fetchall()
        return iter([(row[0], WindowState(count=row[1], reset_at=row[2])) for row in rows])
