"""Eventbrite connector: browse-page ids, batch API details, page JSON-LD enrichment."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import replace
from datetime import datetime
from functools import partial
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from metro_events.common.errors import ConfigError, FatalParseError, FetchError
from metro_events.common.http import HttpClient
from metro_events.common.logging import log_event
from metro_events.common.models import RawListing
from metro_events.common.text import clean_description
from metro_events.common.time_utils import TimeWindow, resolve_local, utc_now, zone
from metro_events.connectors.common import (
    ConnectorOutput,
    SourceContext,
    admit,
    join_location,
    make_listing,
    require_option,
    validate_payload,
)
from metro_events.connectors.jsonld_page import JsonLdEvent, extract_jsonld_events

EVENT_ID_RE = re.compile(r"https://www\.eventbrite\.com/e/[^\"'\s]*-tickets-(\d+)")
EXPAND = "image,primary_venue,ticket_availability,primary_organizer"
_PRICE_RE = re.compile(r"\$?([\d.]+)")


def _text_or_str(v: Any) -> Any:
    if isinstance(v, dict):
        return v.get("text")
    return v


class EbAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    city: str | None = None
    region: str | None = None
    address_1: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class EbVenue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    address: EbAddress | None = None


class EbMoney(BaseModel):
    model_config = ConfigDict(extra="ignore")

    display: str | None = None
    major_value: str | float | None = None


class EbTickets(BaseModel):
    model_config = ConfigDict(extra="ignore")

    is_free: bool = False
    minimum_ticket_price: EbMoney | None = None


class EbImage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str | None = None
    original: dict | None = None


class EbTag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    display_name: str | None = None


class EventbriteEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    summary: str | None = None
    url: str | None = None
    start_date: str | None = None
    start_time: str | None = None
    end_date: str | None = None
    end_time: str | None = None
    timezone: str | None = None
    image: EbImage | None = None
    primary_venue: EbVenue | None = None
    primary_organizer: dict | None = None
    ticket_availability: EbTickets | None = None
    tags: list[EbTag] = Field(default_factory=list)

    @field_validator("name", "summary", mode="before")
    @classmethod
    def unwrap_text(cls, v: Any) -> Any:
        return _text_or_str(v)

    @property
    def image_url(self) -> str | None:
        if self.image is None:
            return None
        original = (self.image.original or {}).get("url")
        return original or self.image.url

    @property
    def organizer_name(self) -> str | None:
        return (self.primary_organizer or {}).get("name")


def ticket_price(tickets: EbTickets | None) -> float | str | None:
    if tickets is None:
        return None
    if tickets.is_free:
        return 0
    money = tickets.minimum_ticket_price
    if money is None:
        return None
    if money.display:
        match = _PRICE_RE.search(money.display)
        if match:
            return match.group(1)
    return money.major_value


def _combine(day: str | None, clock: str | None) -> str | None:
    if not day:
        return None
    return f"{day}T{clock}" if clock else day


class EventbriteConnector:
    def __init__(self, context: SourceContext, options: dict) -> None:
        self.name = context.name
        self.context = context
        self.browse_url = require_option(options, "browse_url", self.name)
        self.api_url = require_option(options, "api_url", self.name)
        self.max_pages = int(options.get("max_pages", 5))
        self.batch_size = int(options.get("batch_size", 15))
        self.enrich_limit = int(options.get("enrich_limit", 20))
        self.logger = context.logger or logging.getLogger(__name__)

    def discover_ids(self, client: HttpClient, cancel: threading.Event, output: ConnectorOutput) -> list[str]:
        found: dict[str, None] = {}
        for page in range(1, self.max_pages + 1):
            if cancel.is_set():
                output.cancelled = True
                break
            html = client.get_text(self.browse_url, params={"page": page})
            output.pages += 1
            page_ids = EVENT_ID_RE.findall(html)
            if not page_ids:
                break
            for event_id in page_ids:
                found.setdefault(event_id, None)
        else:
            output.truncated = True
        return list(found)

    def _zone_for(self, event: EventbriteEvent) -> str:
        if event.timezone:
            try:
                zone(event.timezone)
                return event.timezone
            except ConfigError:
                pass
        return self.context.timezone

    def build(self, item: dict, fetched_at: datetime) -> RawListing:
        event = validate_payload(EventbriteEvent, item)
        tz_name = self._zone_for(event)
        start = resolve_local(_combine(event.start_date, event.start_time), tz_name)
        if start is None:
            raise FatalParseError(f"Eventbrite event {event.id} has no start date")
        end = resolve_local(_combine(event.end_date, event.end_time), tz_name)
        venue = event.primary_venue or EbVenue()
        address = venue.address or EbAddress()

        return make_listing(
            source=self.name,
            source_id=event.id,
            title=event.name,
            start=start,
            end=end,
            fetched_at=fetched_at,
            description=event.summary,
            venue=venue.name,
            location=join_location(venue.name, address.address_1, address.city, address.region),
            organizer=event.organizer_name or venue.name,
            price_raw=ticket_price(event.ticket_availability),
            url=event.url or f"https://www.eventbrite.com/e/{event.id}",
            image_url=event.image_url,
            tags=tuple(sorted({t.display_name.casefold() for t in event.tags if t.display_name})),
            lat=address.latitude,
            lon=address.longitude,
            region=self.context.region.code,
            payload=event,
        )

    def enrich(self, listing: RawListing, client: HttpClient) -> RawListing:
        """Fill a missing description or image from the event page's JSON-LD."""
        try:
            html = client.get_text(listing.url)
        except FetchError as exc:
            log_event(
                self.logger,
                f"detail enrichment failed for {listing.url}: {exc}",
                level=logging.WARNING,
                stage="fetch",
                source=self.name,
                event="ENRICH_FAIL",
                status="skipped",
                error_code=exc.error_code,
            )
            return listing
        items, _ = extract_jsonld_events(html)
        for item in items:
            try:
                detail = JsonLdEvent.from_item(item)
            except FatalParseError:
                continue
            return replace(
                listing,
                description_raw=listing.description_raw or clean_description(detail.description) or None,
                image_url=listing.image_url or detail.image,
            )
        return listing

    def fetch(self, window: TimeWindow, client: HttpClient, cancel: threading.Event) -> ConnectorOutput:
        output = ConnectorOutput(source=self.name)
        fetched_at = utc_now()
        event_ids = self.discover_ids(client, cancel, output)

        for offset in range(0, len(event_ids), self.batch_size):
            if cancel.is_set():
                output.cancelled = True
                break
            batch = event_ids[offset : offset + self.batch_size]
            data = client.get_json(
                self.api_url,
                params={"event_ids": ",".join(batch), "page_size": self.batch_size, "expand": EXPAND},
            )
            if not isinstance(data, dict):
                raise FatalParseError(f"Unexpected Eventbrite payload for {self.name}")
            output.pages += 1
            for item in data.get("events") or []:
                admit(output, self.context, window, partial(self.build, item, fetched_at))

        enriched = 0
        for idx, listing in enumerate(output.listings):
            if enriched >= self.enrich_limit or cancel.is_set():
                break
            if listing.description_raw and listing.image_url:
                continue
            output.listings[idx] = self.enrich(listing, client)
            enriched += 1

        return output
