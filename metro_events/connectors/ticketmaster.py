"""Ticketmaster Discovery API connector (one venue per source)."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from functools import partial

from pydantic import BaseModel, ConfigDict, Field, field_validator

from metro_events.common.errors import ConfigError, FatalParseError
from metro_events.common.http import HttpClient
from metro_events.common.models import RawListing
from metro_events.common.time_utils import TimeWindow, combine_local, resolve_local, utc_now
from metro_events.connectors.common import (
    ConnectorOutput,
    SourceContext,
    admit,
    as_float,
    join_location,
    make_listing,
    require_option,
    validate_payload,
)

DEFAULT_BASE_URL = "https://app.ticketmaster.com/discovery/v2/events.json"
_IGNORED_CLASSIFICATIONS = {"undefined", "other", "miscellaneous"}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TmStart(_Payload):
    local_date: str | None = Field(default=None, alias="localDate")
    local_time: str | None = Field(default=None, alias="localTime")
    date_time: str | None = Field(default=None, alias="dateTime")


class TmDates(_Payload):
    start: TmStart | None = None


class TmPriceRange(_Payload):
    min: float | None = None
    max: float | None = None
    currency: str | None = None


class TmImage(_Payload):
    url: str
    width: int = 0
    height: int = 0
    ratio: str | None = None


class TmNamed(_Payload):
    name: str | None = None


class TmStateRef(_Payload):
    state_code: str | None = Field(default=None, alias="stateCode")


class TmLocation(_Payload):
    latitude: float | None = None
    longitude: float | None = None


class TmVenue(_Payload):
    name: str | None = None
    city: TmNamed | None = None
    state: TmStateRef | None = None
    location: TmLocation | None = None


class TmAttraction(_Payload):
    name: str | None = None
    description: str | None = None


class TmClassification(_Payload):
    segment: TmNamed | None = None
    genre: TmNamed | None = None


class TmEmbedded(_Payload):
    venues: list[TmVenue] = Field(default_factory=list)
    attractions: list[TmAttraction] = Field(default_factory=list)


class TicketmasterEvent(_Payload):
    id: str
    name: str
    url: str | None = None
    dates: TmDates | None = None
    price_ranges: list[TmPriceRange] = Field(default_factory=list, alias="priceRanges")
    images: list[TmImage] = Field(default_factory=list)
    info: str | None = None
    please_note: str | None = Field(default=None, alias="pleaseNote")
    description: str | None = None
    classifications: list[TmClassification] = Field(default_factory=list)
    embedded: TmEmbedded | None = Field(default=None, alias="_embedded")

    @field_validator("name")
    @classmethod
    def validate_name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name cannot be empty")
        return v


def best_image(images: list[TmImage]) -> str | None:
    if not images:
        return None
    wide = sorted((img for img in images if img.ratio == "16_9"), key=lambda img: (-img.width, img.url))
    return (wide[0] if wide else images[0]).url


def classification_tags(classifications: list[TmClassification]) -> tuple[str, ...]:
    tags = set()
    for item in classifications:
        for named in (item.segment, item.genre):
            if named is None or not named.name:
                continue
            tag = named.name.strip().casefold()
            if tag and tag not in _IGNORED_CLASSIFICATIONS:
                tags.add(tag)
    return tuple(sorted(tags))


class TicketmasterConnector:
    def __init__(self, context: SourceContext, options: dict) -> None:
        self.name = context.name
        self.context = context
        self.venue_id = require_option(options, "venue_id", self.name)
        self.venue_name = options.get("venue_name")
        self.base_url = options.get("base_url", DEFAULT_BASE_URL)
        self.default_local_time = options.get("default_local_time", "20:00:00")
        self.page_size = int(options.get("page_size", 50))
        self.max_pages = int(options.get("max_pages", 10))

    def _params(self, window: TimeWindow, page: int) -> dict:
        return {
            "apikey": self.context.api_key,
            "venueId": self.venue_id,
            "size": self.page_size,
            "page": page,
            "sort": "date,asc",
            "startDateTime": window.start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDateTime": window.end.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

    def build(self, item: dict, fetched_at: datetime) -> RawListing:
        return self.to_listing(validate_payload(TicketmasterEvent, item), fetched_at)

    def to_listing(self, event: TicketmasterEvent, fetched_at: datetime) -> RawListing:
        start_info = event.dates.start if event.dates else None
        if start_info is None or not (start_info.date_time or start_info.local_date):
            raise FatalParseError(f"Ticketmaster event {event.id} has no start date")
        if start_info.date_time:
            start = resolve_local(start_info.date_time, self.context.timezone)
        else:
            start = combine_local(
                start_info.local_date,
                start_info.local_time,
                self.context.timezone,
                default_clock=self.default_local_time,
            )

        embedded = event.embedded or TmEmbedded()
        venue = embedded.venues[0] if embedded.venues else TmVenue()
        attraction_description = next((a.description for a in embedded.attractions if a.description), None)
        price_raw = None
        if event.price_ranges and event.price_ranges[0].min is not None:
            price_raw = event.price_ranges[0].min

        return make_listing(
            source=self.name,
            source_id=f"tm-{event.id}",
            title=event.name,
            start=start,
            fetched_at=fetched_at,
            description=event.description or event.info or event.please_note or attraction_description,
            venue=venue.name or self.venue_name,
            location=join_location(
                venue.name or self.venue_name,
                venue.city.name if venue.city else None,
                venue.state.state_code if venue.state else None,
            ),
            price_raw=price_raw,
            url=event.url,
            image_url=best_image(event.images),
            tags=classification_tags(event.classifications),
            lat=as_float(venue.location.latitude) if venue.location else None,
            lon=as_float(venue.location.longitude) if venue.location else None,
            region=self.context.region.code,
            payload=event,
        )

    def fetch(self, window: TimeWindow, client: HttpClient, cancel: threading.Event) -> ConnectorOutput:
        if not self.context.api_key:
            raise ConfigError(f"Source {self.name} needs an API key")
        output = ConnectorOutput(source=self.name)
        fetched_at = utc_now()

        page = 0
        while page < self.max_pages:
            if cancel.is_set():
                output.cancelled = True
                break
            data = client.get_json(self.base_url, params=self._params(window, page))
            if not isinstance(data, dict):
                raise FatalParseError(f"Unexpected Ticketmaster payload for {self.name}")
            output.pages += 1

            items = (data.get("_embedded") or {}).get("events") or []
            for item in items:
                admit(output, self.context, window, partial(self.build, item, fetched_at))

            page_info = data.get("page") or {}
            total_pages = int(page_info.get("totalPages", 0) or 0)
            number = int(page_info.get("number", page) or 0)
            if not items or number >= total_pages - 1:
                break
            page += 1

        if page >= self.max_pages:
            output.truncated = True
        return output
