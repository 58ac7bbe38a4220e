"""RawListing -> CanonicalEvent candidate conversion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timezone
from typing import Iterable

from metro_events.common.errors import FatalParseError
from metro_events.common.ids import event_id_for
from metro_events.common.logging import log_event
from metro_events.common.models import CanonicalEvent, Geo, RawListing
from metro_events.common.price import extract_price_from_text, parse_price
from metro_events.common.region import Region
from metro_events.common.text import clean_description, clean_title, strip_location_phrases


def _clean_optional(value: str | None) -> str | None:
    cleaned = clean_title(value)
    return cleaned or None


def _clean_url(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip()
    return cleaned or None


def _normalise_tags(tags: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({" ".join(tag.split()).casefold() for tag in tags if tag and tag.strip()}))


def normalise_listing(
    listing: RawListing,
    *,
    region_code: str,
    city: str | None = None,
    state: str | None = None,
) -> CanonicalEvent:
    title = clean_title(listing.title)
    if not title:
        raise FatalParseError(f"{listing.source}:{listing.source_id} has no title")
    if listing.start is None or listing.start.tzinfo is None:
        raise FatalParseError(f"{listing.source}:{listing.source_id} has no timezone-aware start")

    start = listing.start.astimezone(timezone.utc)
    end = listing.end.astimezone(timezone.utc) if listing.end is not None and listing.end.tzinfo else None
    if end is not None and end < start:
        end = None

    description = strip_location_phrases(clean_description(listing.description_raw), city, state).strip() or None
    price = parse_price(listing.price_raw)
    if price is None:
        price = extract_price_from_text(description)

    fetched_at = listing.fetched_at.astimezone(timezone.utc)
    return CanonicalEvent(
        id=event_id_for(listing.source, listing.source_id),
        source=listing.source,
        source_id=listing.source_id,
        title=title,
        start_date=start,
        end_date=end,
        venue=_clean_optional(listing.venue),
        organizer=_clean_optional(listing.organizer),
        price=price,
        url=_clean_url(listing.url),
        description=description,
        image_url=_clean_url(listing.image_url),
        tags=_normalise_tags(listing.tags),
        geo=Geo(lat=listing.lat, lon=listing.lon, region=listing.region or region_code),
        first_seen_at=fetched_at,
        last_seen_at=fetched_at,
    )


@dataclass
class NormaliseResult:
    events: list[CanonicalEvent] = field(default_factory=list)
    errors: dict[str, int] = field(default_factory=dict)


def normalise_batch(listings: Iterable[RawListing], region: Region, logger: logging.Logger | None = None) -> NormaliseResult:
    result = NormaliseResult()
    for listing in listings:
        try:
            result.events.append(
                normalise_listing(listing, region_code=region.code, city=region.city, state=region.state)
            )
        except FatalParseError as exc:
            result.errors[listing.source] = result.errors.get(listing.source, 0) + 1
            if logger is not None:
                log_event(
                    logger,
                    str(exc),
                    level=logging.WARNING,
                    stage="normalise",
                    source=listing.source,
                    event="NORMALISE_SKIPPED",
                    status="skipped",
                    error_code=exc.error_code,
                )
    return result
