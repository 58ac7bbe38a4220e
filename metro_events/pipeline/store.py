"""SQLite-backed canonical event catalog."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable

from metro_events.common.constants import HIDDEN_FILTERED, HIDDEN_STALE
from metro_events.common.errors import PersistenceError
from metro_events.common.fs import ensure_dir
from metro_events.common.models import CanonicalEvent, DuplicateGroup, Geo
from metro_events.common.time_utils import TimeWindow, parse_utc_iso, to_utc_iso

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT NOT NULL UNIQUE,
    source TEXT NOT NULL,
    source_id TEXT NOT NULL,
    title TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    venue TEXT,
    organizer TEXT,
    price REAL CHECK (price IS NULL OR price >= 0),
    url TEXT,
    description TEXT,
    image_url TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    lat REAL,
    lon REAL,
    region TEXT,
    hidden INTEGER NOT NULL DEFAULT 0,
    hidden_reason TEXT,
    duplicate_of TEXT,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    UNIQUE (source, source_id)
);
CREATE INDEX IF NOT EXISTS idx_events_start ON events (start_date);
CREATE INDEX IF NOT EXISTS idx_events_visible ON events (hidden, duplicate_of, start_date);
CREATE TABLE IF NOT EXISTS catalog_meta (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""

COLUMNS = (
    "id",
    "source",
    "source_id",
    "title",
    "start_date",
    "end_date",
    "venue",
    "organizer",
    "price",
    "url",
    "description",
    "image_url",
    "tags",
    "lat",
    "lon",
    "region",
    "hidden",
    "hidden_reason",
    "duplicate_of",
    "first_seen_at",
    "last_seen_at",
)
_MUTABLE = (
    "title",
    "start_date",
    "end_date",
    "venue",
    "organizer",
    "price",
    "url",
    "description",
    "image_url",
    "tags",
    "lat",
    "lon",
    "region",
    "duplicate_of",
    "last_seen_at",
)

# id and first_seen_at are never overwritten; a filtered hide survives re-sighting.
UPSERT_SQL = (
    f"INSERT INTO events ({', '.join(COLUMNS)}) VALUES ({', '.join('?' for _ in COLUMNS)}) "
    "ON CONFLICT(source, source_id) DO UPDATE SET "
    + ", ".join(f"{col} = excluded.{col}" for col in _MUTABLE)
    + f", hidden = CASE WHEN events.hidden_reason = '{HIDDEN_FILTERED}' THEN events.hidden ELSE excluded.hidden END"
    + f", hidden_reason = CASE WHEN events.hidden_reason = '{HIDDEN_FILTERED}' THEN events.hidden_reason"
    " ELSE excluded.hidden_reason END"
)
_VISIBLE = "hidden = 0 AND duplicate_of IS NULL"
CATALOG_VERSION_KEY = "catalog_version"


def _row(event: CanonicalEvent) -> tuple:
    return (
        event.id,
        event.source,
        event.source_id,
        event.title,
        to_utc_iso(event.start_date),
        to_utc_iso(event.end_date),
        event.venue,
        event.organizer,
        event.price,
        event.url,
        event.description,
        event.image_url,
        json.dumps(list(event.tags)),
        event.geo.lat,
        event.geo.lon,
        event.geo.region,
        int(event.hidden),
        event.hidden_reason,
        event.duplicate_of,
        to_utc_iso(event.first_seen_at or event.last_seen_at),
        to_utc_iso(event.last_seen_at or event.first_seen_at),
    )


def _event(row: sqlite3.Row) -> CanonicalEvent:
    return CanonicalEvent(
        id=row["id"],
        source=row["source"],
        source_id=row["source_id"],
        title=row["title"],
        start_date=parse_utc_iso(row["start_date"]),
        end_date=parse_utc_iso(row["end_date"]),
        venue=row["venue"],
        organizer=row["organizer"],
        price=row["price"],
        url=row["url"],
        description=row["description"],
        image_url=row["image_url"],
        tags=tuple(json.loads(row["tags"] or "[]")),
        geo=Geo(lat=row["lat"], lon=row["lon"], region=row["region"]),
        hidden=bool(row["hidden"]),
        hidden_reason=row["hidden_reason"],
        duplicate_of=row["duplicate_of"],
        first_seen_at=parse_utc_iso(row["first_seen_at"]),
        last_seen_at=parse_utc_iso(row["last_seen_at"]),
    )


class EventStore:
    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            ensure_dir(Path(self.path).parent)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        with self.lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _query(self, sql: str, params: Iterable = ()) -> list[CanonicalEvent]:
        with self.lock:
            rows = self.conn.execute(sql, tuple(params)).fetchall()
        return [_event(row) for row in rows]

    def write_group(self, group: DuplicateGroup) -> int:
        """Upsert every member of one group atomically."""
        try:
            with self.lock, self.conn:
                for member in group.members:
                    self.conn.execute(UPSERT_SQL, _row(member))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write group {group.key!r}: {exc}") from exc
        return len(group.members)

    def hide_stale(self, source: str, window: TimeWindow, seen_ids: Iterable[str]) -> int:
        """Soft-delete listings of ``source`` inside ``window`` that were not seen this run."""
        seen = set(seen_ids)
        with self.lock:
            rows = self.conn.execute(
                "SELECT source_id FROM events WHERE source = ? AND hidden = 0 AND start_date >= ? AND start_date <= ?",
                (source, to_utc_iso(window.start), to_utc_iso(window.end)),
            ).fetchall()
            vanished = sorted(row["source_id"] for row in rows if row["source_id"] not in seen)
            if not vanished:
                return 0
            try:
                with self.conn:
                    self.conn.executemany(
                        "UPDATE events SET hidden = 1, hidden_reason = ? WHERE source = ? AND source_id = ?",
                        [(HIDDEN_STALE, source, source_id) for source_id in vanished],
                    )
            except sqlite3.Error as exc:
                raise PersistenceError(f"Failed to hide stale listings for {source}: {exc}") from exc
        return len(vanished)

    def hide(self, ids: Iterable[str], reason: str = HIDDEN_FILTERED) -> int:
        id_list = sorted(set(ids))
        if not id_list:
            return 0
        try:
            with self.lock, self.conn:
                cursor = self.conn.executemany(
                    "UPDATE events SET hidden = 1, hidden_reason = ? WHERE id = ?",
                    [(reason, event_id) for event_id in id_list],
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to hide events: {exc}") from exc
        return cursor.rowcount

    def get(self, event_id: str) -> CanonicalEvent | None:
        found = self._query("SELECT * FROM events WHERE id = ?", (event_id,))
        return found[0] if found else None

    def get_many(self, ids: Iterable[str]) -> list[CanonicalEvent]:
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return []
        placeholders = ", ".join("?" for _ in id_list)
        found = {
            event.id: event
            for event in self._query(f"SELECT * FROM events WHERE id IN ({placeholders}) AND {_VISIBLE}", id_list)
        }
        return [found[event_id] for event_id in id_list if event_id in found]

    def visible_events(self, *, since: datetime | None = None, limit: int | None = None) -> list[CanonicalEvent]:
        sql = f"SELECT * FROM events WHERE {_VISIBLE}"
        params: list = []
        if since is not None:
            sql += " AND start_date >= ?"
            params.append(to_utc_iso(since))
        sql += " ORDER BY start_date, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return self._query(sql, params)

    def events_in_window(self, window: TimeWindow, *, include_duplicates: bool = True) -> list[CanonicalEvent]:
        """Unhidden events starting inside ``window``; duplicate members included by default."""
        sql = "SELECT * FROM events WHERE hidden = 0 AND start_date >= ? AND start_date <= ?"
        if not include_duplicates:
            sql += " AND duplicate_of IS NULL"
        sql += " ORDER BY start_date, id"
        return self._query(sql, (to_utc_iso(window.start), to_utc_iso(window.end)))

    def filtered_keys(self) -> set[tuple[str, str]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT source, source_id FROM events WHERE hidden_reason = ?", (HIDDEN_FILTERED,)
            ).fetchall()
        return {(row["source"], row["source_id"]) for row in rows}

    def by_tag(self, tag: str, *, since: datetime | None = None, limit: int | None = None) -> list[CanonicalEvent]:
        wanted = tag.strip().casefold()
        matches = [event for event in self.visible_events(since=since) if wanted in event.tags]
        return matches[:limit] if limit is not None else matches

    def similar_to(self, event_id: str, *, since: datetime | None = None, limit: int = 6) -> list[CanonicalEvent]:
        """Visible events sharing a tag or the venue, most shared tags first."""
        target = self.get(event_id)
        if target is None:
            return []
        target_tags = set(target.tags)
        target_venue = (target.venue or "").casefold()
        scored = []
        for event in self.visible_events(since=since):
            if event.id == target.id:
                continue
            shared = len(target_tags & set(event.tags))
            same_venue = bool(target_venue) and (event.venue or "").casefold() == target_venue
            if shared or same_venue:
                scored.append((-(shared + int(same_venue)), event.start_date, event.id, event))
        scored.sort(key=lambda item: item[:3])
        return [item[3] for item in scored[:limit]]

    def orphaned_duplicates(self) -> dict[str, list[CanonicalEvent]]:
        """Unhidden members whose representative is hidden, keyed by that representative's id."""
        rows = self._query(
            "SELECT m.* FROM events m JOIN events r ON m.duplicate_of = r.id "
            "WHERE m.hidden = 0 AND r.hidden = 1 ORDER BY m.duplicate_of, m.source, m.source_id"
        )
        orphans: dict[str, list[CanonicalEvent]] = {}
        for event in rows:
            orphans.setdefault(event.duplicate_of, []).append(event)
        return orphans

    def catalog_version(self) -> int:
        with self.lock:
            row = self.conn.execute("SELECT value FROM catalog_meta WHERE name = ?", (CATALOG_VERSION_KEY,)).fetchone()
        return int(row["value"]) if row is not None else 0

    def bump_catalog_version(self) -> int:
        try:
            with self.lock, self.conn:
                self.conn.execute(
                    "INSERT INTO catalog_meta (name, value) VALUES (?, 1) "
                    "ON CONFLICT(name) DO UPDATE SET value = catalog_meta.value + 1",
                    (CATALOG_VERSION_KEY,),
                )
                row = self.conn.execute(
                    "SELECT value FROM catalog_meta WHERE name = ?", (CATALOG_VERSION_KEY,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to bump catalog version: {exc}") from exc
        return int(row["value"])

    def count(self) -> int:
        with self.lock:
            return int(self.conn.execute("SELECT COUNT(*) FROM events").fetchone()[0])
