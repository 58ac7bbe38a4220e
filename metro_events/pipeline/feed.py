"""RFC 5545 calendar rendering for ranked event lists."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

from metro_events.common.constants import DEFAULT_EVENT_DURATION_HOURS
from metro_events.common.models import CanonicalEvent
from metro_events.common.price import format_price

CRLF = "\r\n"
MAX_LINE_OCTETS = 75
DESCRIPTION_CHARS = 500
PRODID = "-//metro-events//Top N feed//EN"


def escape_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\n")
        .replace("\r", "\n")
        .replace("\n", "\\n")
    )


def format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def fold_line(line: str) -> str:
    """Split at 75 octets without breaking a UTF-8 sequence; continuations start with a space."""
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return line
    parts: list[str] = []
    current = ""
    current_octets = 0
    limit = MAX_LINE_OCTETS
    for char in line:
        size = len(char.encode("utf-8"))
        if current_octets + size > limit:
            parts.append(current)
            current = " "
            current_octets = 1
        current += char
        current_octets += size
    parts.append(current)
    return CRLF.join(parts)


def _description(event: CanonicalEvent) -> str:
    chunks = []
    if event.description:
        chunks.append(event.description[:DESCRIPTION_CHARS])
    chunks.append(f"Price: {format_price(event.price)}")
    if event.url:
        chunks.append(event.url)
    return "\n\n".join(chunks)


def event_lines(event: CanonicalEvent, *, domain: str) -> list[str]:
    end = event.end_date or event.start_date + timedelta(hours=DEFAULT_EVENT_DURATION_HOURS)
    stamp = event.first_seen_at or event.start_date
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event.id}@{domain}",
        f"DTSTAMP:{format_utc(stamp)}",
        f"DTSTART:{format_utc(event.start_date)}",
        f"DTEND:{format_utc(end)}",
        f"SUMMARY:{escape_text(event.title)}",
        f"DESCRIPTION:{escape_text(_description(event))}",
    ]
    if event.venue:
        lines.append(f"LOCATION:{escape_text(event.venue)}")
    if event.url:
        lines.append(f"URL:{event.url}")
    if event.tags:
        lines.append(f"CATEGORIES:{','.join(escape_text(tag) for tag in event.tags)}")
    lines.append("END:VEVENT")
    return lines


def render_calendar(
    events: Iterable[CanonicalEvent],
    *,
    calendar_name: str,
    domain: str,
    generated_at: datetime,
) -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        f"X-WR-CALNAME:{escape_text(calendar_name)}",
        "REFRESH-INTERVAL;VALUE=DURATION:PT1H",
        "X-PUBLISHED-TTL:PT1H",
        f"X-GENERATED-AT:{format_utc(generated_at)}",
    ]
    for event in events:
        lines.extend(event_lines(event, domain=domain))
    lines.append("END:VCALENDAR")
    return CRLF.join(fold_line(line) for line in lines) + CRLF
