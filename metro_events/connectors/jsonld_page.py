"""Scrape schema.org Event JSON-LD from venue pages."""

from __future__ import annotations

import json
import threading
from datetime import datetime, time
from functools import partial
from typing import Any

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, field_validator

from metro_events.common.errors import FatalParseError
from metro_events.common.http import HttpClient
from metro_events.common.ids import fallback_source_id
from metro_events.common.models import RawListing
from metro_events.common.time_utils import TimeWindow, resolve_local, utc_now
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

CANCELLED_STATUSES = ("EventCancelled", "EventPostponed")


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _is_event_type(value: Any) -> bool:
    types = value if isinstance(value, list) else [value]
    return any(isinstance(t, str) and t.endswith("Event") for t in types)


def extract_event_objects(data: Any) -> list[dict]:
    """Event dicts from a JSON-LD blob, including ``@graph`` and nested lists."""
    items: list[dict] = []
    if isinstance(data, list):
        for obj in data:
            items.extend(extract_event_objects(obj))
    elif isinstance(data, dict):
        if _is_event_type(data.get("@type")):
            items.append(data)
        for key in ("@graph", "itemListElement"):
            if key in data:
                items.extend(extract_event_objects(data[key]))
        if data.get("@type") == "ListItem" and "item" in data:
            items.extend(extract_event_objects(data["item"]))
    return items


def extract_jsonld_events(html: str) -> tuple[list[dict], int]:
    """All Event objects on a page plus the number of unparseable script blocks."""
    soup = BeautifulSoup(html, "html.parser")
    events: list[dict] = []
    broken = 0
    for tag in soup.find_all("script", type="application/ld+json"):
        content = tag.string or tag.get_text() or ""
        if not content.strip():
            continue
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            broken += 1
            continue
        events.extend(extract_event_objects(data))
    return events, broken


class JsonLdPlace(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    street: str | None = None
    locality: str | None = None
    region: str | None = None
    lat: float | None = None
    lon: float | None = None

    @staticmethod
    def flatten(value: Any) -> dict:
        value = _first(value)
        if isinstance(value, str):
            return {"name": value}
        if not isinstance(value, dict):
            return {}
        address = value.get("address")
        geo = value.get("geo") if isinstance(value.get("geo"), dict) else {}
        if isinstance(address, str):
            street, locality, region = address, None, None
        elif isinstance(address, dict):
            street = address.get("streetAddress")
            locality = address.get("addressLocality")
            region = address.get("addressRegion")
        else:
            street = locality = region = None
        return {
            "name": value.get("name"),
            "street": street,
            "locality": locality,
            "region": region,
            "lat": as_float(geo.get("latitude")),
            "lon": as_float(geo.get("longitude")),
        }

    def text(self) -> str | None:
        return join_location(self.name, self.street, self.locality, self.region)


class JsonLdEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = Field(default=None, alias="@id")
    name: str
    start_date: str = Field(alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")
    door_time: str | None = Field(default=None, alias="doorTime")
    url: str | None = None
    image: str | None = None
    description: str | None = None
    location: JsonLdPlace = Field(default_factory=JsonLdPlace)
    organizer: str | None = None
    price: float | str | None = None
    event_status: str | None = Field(default=None, alias="eventStatus")
    keywords: list[str] = Field(default_factory=list)

    @classmethod
    def from_item(cls, item: dict) -> "JsonLdEvent":
        offers = _first(item.get("offers"))
        price = None
        if isinstance(offers, dict):
            price = offers.get("price", offers.get("lowPrice"))
        data = dict(item)
        data["location"] = JsonLdPlace.flatten(item.get("location"))
        data["price"] = price
        return validate_payload(cls, data)

    @field_validator("image", mode="before")
    @classmethod
    def pick_image(cls, v: Any) -> Any:
        v = _first(v)
        if isinstance(v, dict):
            return v.get("url") or v.get("contentUrl")
        return v

    @field_validator("organizer", mode="before")
    @classmethod
    def pick_organizer(cls, v: Any) -> Any:
        v = _first(v)
        if isinstance(v, dict):
            return v.get("name")
        return v

    @field_validator("keywords", mode="before")
    @classmethod
    def split_keywords(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("event_status", mode="before")
    @classmethod
    def short_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.rstrip("/").rsplit("/", 1)[-1]
        return v

    @property
    def cancelled(self) -> bool:
        return self.event_status in CANCELLED_STATUSES


def parse_clock(value: str | None) -> time | None:
    if not value:
        return None
    try:
        return time.fromisoformat(value)
    except ValueError as exc:
        raise FatalParseError(f"Unparseable clock time: {value!r}") from exc


class JsonLdPageConnector:
    def __init__(self, context: SourceContext, options: dict) -> None:
        self.name = context.name
        self.context = context
        self.urls = list(require_option(options, "urls", self.name))
        self.default_venue = options.get("default_venue")
        self.default_time = parse_clock(options.get("default_local_time"))

    def to_listing(self, event: JsonLdEvent, page_url: str, fetched_at: datetime) -> RawListing:
        default_time = parse_clock(event.door_time) if event.door_time and "T" not in event.door_time else None
        start = resolve_local(event.start_date, self.context.timezone, default_time=default_time or self.default_time)
        end = resolve_local(event.end_date, self.context.timezone) if event.end_date else None
        venue = event.location.name or self.default_venue
        source_id = event.id or event.url or fallback_source_id(page_url, event.name, event.start_date)

        return make_listing(
            source=self.name,
            source_id=source_id,
            title=event.name,
            start=start,
            end=end,
            fetched_at=fetched_at,
            description=event.description,
            venue=venue,
            location=event.location.text() or venue,
            organizer=event.organizer,
            price_raw=event.price,
            url=event.url or page_url,
            image_url=event.image,
            tags=tuple(sorted({kw.casefold() for kw in event.keywords})),
            lat=event.location.lat,
            lon=event.location.lon,
            region=self.context.region.code,
            payload=event,
        )

    def build(self, item: dict, page_url: str, fetched_at: datetime) -> RawListing:
        event = JsonLdEvent.from_item(item)
        if event.cancelled:
            raise FatalParseError(f"{event.name!r} is marked {event.event_status}")
        return self.to_listing(event, page_url, fetched_at)

    def fetch(self, window: TimeWindow, client: HttpClient, cancel: threading.Event) -> ConnectorOutput:
        output = ConnectorOutput(source=self.name)
        fetched_at = utc_now()

        for page_url in self.urls:
            if cancel.is_set():
                output.cancelled = True
                break
            html = client.get_text(page_url)
            output.pages += 1
            items, broken = extract_jsonld_events(html)
            output.parse_errors += broken
            for item in items:
                admit(output, self.context, window, partial(self.build, item, page_url, fetched_at))

        return output
