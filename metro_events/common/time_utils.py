"""UTC-focused helpers and source-timezone resolution."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from metro_events.common.errors import ConfigError, FatalParseError


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_timestamp_iso() -> str:
    return utc_now().isoformat(timespec="milliseconds")


def build_window(now: datetime, days: int) -> TimeWindow:
    return TimeWindow(start=now, end=now + timedelta(days=days))


def zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {tz_name}") from exc


def resolve_local(value: str | None, tz_name: str, *, default_time: time | None = None) -> datetime | None:
    """Turn an upstream date/time string into an aware UTC instant.

    Strings carrying an explicit offset (or ``Z``) keep it. Naive strings are
    interpreted in ``tz_name``, the source's own zone, never the host's.
    A bare ``YYYY-MM-DD`` gets ``default_time`` (midnight when omitted).
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        if "T" in text or " " in text:
            parsed = datetime.fromisoformat(text)
        else:
            day = date.fromisoformat(text)
            parsed = datetime.combine(day, default_time or time(0, 0))
    except ValueError as exc:
        raise FatalParseError(f"Unparseable datetime: {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone(tz_name))
    return parsed.astimezone(timezone.utc)


def combine_local(day: str | None, clock: str | None, tz_name: str, *, default_clock: str = "00:00") -> datetime | None:
    if not day:
        return None
    return resolve_local(f"{day}T{clock or default_clock}", tz_name)


def to_utc_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_utc_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def minute_bucket(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")
