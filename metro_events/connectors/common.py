"""Connector capability interface and shared listing helpers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from metro_events.common.errors import ConfigError, FatalParseError, GeoFilteredSkip
from metro_events.common.http import HttpClient
from metro_events.common.logging import log_event
from metro_events.common.models import RawListing
from metro_events.common.region import Region, ensure_in_region
from metro_events.common.text import clean_description, clean_title
from metro_events.common.time_utils import TimeWindow

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class ConnectorOutput:
    source: str
    listings: list[RawListing] = field(default_factory=list)
    geo_filtered: int = 0
    parse_errors: int = 0
    out_of_window: int = 0
    pages: int = 0
    cancelled: bool = False
    # Stopped at a page or item cap while upstream still had more.
    truncated: bool = False

    def counts(self) -> dict[str, int | bool]:
        return {
            "listings": len(self.listings),
            "geo_filtered": self.geo_filtered,
            "parse_errors": self.parse_errors,
            "out_of_window": self.out_of_window,
            "pages": self.pages,
            "cancelled": self.cancelled,
            "truncated": self.truncated,
        }


class Connector(Protocol):
    name: str

    def fetch(self, window: TimeWindow, client: HttpClient, cancel: threading.Event) -> ConnectorOutput: ...


@dataclass(frozen=True)
class SourceContext:
    """What every connector receives besides its own options."""

    name: str
    region: Region
    timezone: str
    api_key: str | None = None
    logger: logging.Logger | None = None


def require_option(options: dict, key: str, source: str) -> Any:
    if key not in options or options[key] in (None, ""):
        raise ConfigError(f"Source {source} is missing option: {key}")
    return options[key]


def validate_payload(model: type[ModelT], item: Any) -> ModelT:
    try:
        return model.model_validate(item)
    except ValidationError as exc:
        raise FatalParseError(f"{model.__name__} rejected upstream item: {exc.error_count()} error(s)") from exc


def make_listing(
    *,
    source: str,
    source_id: str | None,
    title: str | None,
    start: datetime | None,
    fetched_at: datetime,
    description: str | None = None,
    **fields: Any,
) -> RawListing:
    cleaned_title = clean_title(title)
    if not cleaned_title:
        raise FatalParseError(f"Listing from {source} has no title")
    if start is None:
        raise FatalParseError(f"Listing {cleaned_title!r} from {source} has no start time")
    if not source_id:
        raise FatalParseError(f"Listing {cleaned_title!r} from {source} has no identifier")
    return RawListing(
        source=source,
        source_id=str(source_id),
        title=cleaned_title,
        start=start,
        fetched_at=fetched_at,
        description_raw=clean_description(description) or None,
        **fields,
    )


def in_window(listing: RawListing, window: TimeWindow) -> bool:
    last_moment = listing.end or listing.start
    return listing.start <= window.end and last_moment >= window.start


def admit(
    output: ConnectorOutput,
    context: SourceContext,
    window: TimeWindow,
    build: Callable[[], RawListing],
) -> RawListing | None:
    """Run one listing through validation, window and region checks.

    Parse failures and region misses are counted on ``output``; neither
    propagates, so one bad item never costs the rest of the page.
    """
    try:
        listing = build()
        ensure_in_region(
            context.region,
            lat=listing.lat,
            lon=listing.lon,
            location=listing.location or listing.venue,
            title=listing.title,
        )
    except FatalParseError as exc:
        output.parse_errors += 1
        if context.logger is not None:
            log_event(
                context.logger,
                str(exc),
                level=logging.WARNING,
                stage="fetch",
                source=context.name,
                event="LISTING_SKIPPED",
                status="skipped",
                error_code=exc.error_code,
            )
        return None
    except GeoFilteredSkip:
        output.geo_filtered += 1
        return None

    if not in_window(listing, window):
        output.out_of_window += 1
        return None
    output.listings.append(listing)
    return listing


def as_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def join_location(*parts: str | None) -> str | None:
    seen: list[str] = []
    for part in parts:
        text = (part or "").strip()
        if text and text not in seen:
            seen.append(text)
    return ", ".join(seen) or None
