"""Data models used across the pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any

from metro_events.common.time_utils import to_utc_iso


@dataclass(frozen=True)
class Geo:
    lat: float | None = None
    lon: float | None = None
    region: str | None = None


@dataclass(frozen=True)
class RawListing:
    source: str
    source_id: str
    title: str
    start: datetime
    fetched_at: datetime
    end: datetime | None = None
    venue: str | None = None
    location: str | None = None
    organizer: str | None = None
    price_raw: float | int | str | None = None
    url: str | None = None
    description_raw: str | None = None
    image_url: str | None = None
    tags: tuple[str, ...] = ()
    lat: float | None = None
    lon: float | None = None
    region: str | None = None
    payload: Any = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        out = {
            "source": self.source,
            "source_id": self.source_id,
            "title": self.title,
            "start": to_utc_iso(self.start),
            "end": to_utc_iso(self.end),
            "venue": self.venue,
            "location": self.location,
            "organizer": self.organizer,
            "price_raw": self.price_raw,
            "url": self.url,
            "description_raw": self.description_raw,
            "image_url": self.image_url,
            "tags": list(self.tags),
            "lat": self.lat,
            "lon": self.lon,
            "region": self.region,
            "fetched_at": to_utc_iso(self.fetched_at),
        }
        if self.payload is not None and hasattr(self.payload, "model_dump"):
            out["payload"] = self.payload.model_dump(mode="json", by_alias=True)
        return out


@dataclass(frozen=True)
class CanonicalEvent:
    id: str
    source: str
    source_id: str
    title: str
    start_date: datetime
    end_date: datetime | None = None
    venue: str | None = None
    organizer: str | None = None
    price: float | None = None
    url: str | None = None
    description: str | None = None
    image_url: str | None = None
    tags: tuple[str, ...] = ()
    geo: Geo = field(default_factory=Geo)
    hidden: bool = False
    hidden_reason: str | None = None
    duplicate_of: str | None = None
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.source, self.source_id)

    @property
    def visible(self) -> bool:
        return not self.hidden and self.duplicate_of is None

    def evolve(self, **changes: Any) -> "CanonicalEvent":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["start_date"] = to_utc_iso(self.start_date)
        out["end_date"] = to_utc_iso(self.end_date)
        out["first_seen_at"] = to_utc_iso(self.first_seen_at)
        out["last_seen_at"] = to_utc_iso(self.last_seen_at)
        out["tags"] = list(self.tags)
        return out


@dataclass(frozen=True)
class ScoreRecord:
    event_id: str
    score: float
    tier: str
    rank: int
    explanation: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DuplicateGroup:
    key: str
    representative: CanonicalEvent
    members: tuple[CanonicalEvent, ...]
    decided_by: str = "single"

    @property
    def sources(self) -> tuple[str, ...]:
        return tuple(sorted({member.source for member in self.members}))

    @property
    def cross_source(self) -> bool:
        return len(self.sources) > 1

    @property
    def duplicates(self) -> tuple[CanonicalEvent, ...]:
        return tuple(member for member in self.members if member.id != self.representative.id)


@dataclass(frozen=True)
class DuplicateConflict:
    key: str
    representative_id: str
    member_ids: tuple[str, ...]
    sources: tuple[str, ...]
    decided_by: str

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["member_ids"] = list(self.member_ids)
        out["sources"] = list(self.sources)
        return out
