"""CitySpark portal connector (POST search paginated by skip)."""

from __future__ import annotations

import threading
from datetime import datetime
from functools import partial

from pydantic import BaseModel, ConfigDict, Field

from metro_events.common.errors import FatalParseError
from metro_events.common.http import HttpClient
from metro_events.common.ids import fallback_source_id
from metro_events.common.models import RawListing
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


class CitySparkLink(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str | None = None


class CitySparkEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = Field(default=None, alias="Id")
    pid: str | int | None = Field(default=None, alias="PId")
    name: str = Field(alias="Name")
    description: str | None = Field(default=None, alias="Description")
    date_start: str | None = Field(default=None, alias="DateStart")
    date_end: str | None = Field(default=None, alias="DateEnd")
    start_utc: str | None = Field(default=None, alias="StartUTC")
    venue: str | None = Field(default=None, alias="Venue")
    city_state: str | None = Field(default=None, alias="CityState")
    address: str | None = Field(default=None, alias="Address")
    latitude: float | None = None
    longitude: float | None = None
    price: float | str | None = Field(default=None, alias="Price")
    links: list[CitySparkLink] = Field(default_factory=list, alias="Links")
    ticket_url: str | None = Field(default=None, alias="TicketUrl")
    large_img: str | None = Field(default=None, alias="LargeImg")
    medium_img: str | None = Field(default=None, alias="MediumImg")
    labels: list[str] = Field(default_factory=list, alias="Labels")


class CitySparkConnector:
    def __init__(self, context: SourceContext, options: dict) -> None:
        self.name = context.name
        self.context = context
        self.endpoint = require_option(options, "endpoint", self.name)
        self.portal_id = require_option(options, "portal_id", self.name)
        self.page_size = int(options.get("page_size", 25))
        self.max_items = int(options.get("max_items", 400))
        self.origin = options.get("origin")
        self.fallback_url = options.get("fallback_url")
        self.search_lat = options.get("search_lat")
        self.search_lng = options.get("search_lng")
        self.distance_miles = options.get("distance_miles", 10)

    def _headers(self) -> dict[str, str]:
        if not self.origin:
            return {}
        return {"Origin": self.origin, "Referer": f"{self.origin}/"}

    def _body(self, window: TimeWindow, skip: int) -> dict:
        # The portal filters by local calendar day, so send the source-zone date.
        local_day = window.start.astimezone(zone(self.context.timezone)).date().isoformat()
        return {
            "ppid": self.portal_id,
            "start": f"{local_day}T00:00",
            "end": None,
            "skip": skip,
            "sort": "Time",
            "defFilter": "all",
            "labels": [],
            "pick": False,
            "tps": None,
            "sparks": False,
            "distance": self.distance_miles,
            "lat": self.search_lat,
            "lng": self.search_lng,
            "search": "",
        }

    def _url_for(self, event: CitySparkEvent, source_id: str) -> str | None:
        for link in event.links:
            if link.url:
                return link.url
        if event.ticket_url:
            return event.ticket_url
        if self.fallback_url:
            return f"{self.fallback_url}#{event.id or source_id}"
        return None

    def build(self, item: dict, fetched_at: datetime) -> RawListing:
        event = validate_payload(CitySparkEvent, item)
        if event.start_utc:
            start = resolve_local(event.start_utc, "UTC")
        else:
            start = resolve_local(event.date_start, self.context.timezone)
        if start is None:
            raise FatalParseError(f"CitySpark item {event.id!r} has no start date")

        source_id = str(event.pid) if event.pid not in (None, "") else event.id
        if not source_id:
            source_id = fallback_source_id(self.name, event.name, start.isoformat())

        return make_listing(
            source=self.name,
            source_id=source_id,
            title=event.name,
            start=start,
            end=resolve_local(event.date_end, self.context.timezone),
            fetched_at=fetched_at,
            description=event.description,
            venue=event.venue,
            location=join_location(event.venue, event.address, event.city_state),
            price_raw=event.price,
            url=self._url_for(event, source_id),
            image_url=event.large_img or event.medium_img,
            tags=tuple(sorted({label.strip().casefold() for label in event.labels if label.strip()})),
            lat=event.latitude,
            lon=event.longitude,
            region=self.context.region.code,
            payload=event,
        )

    def fetch(self, window: TimeWindow, client: HttpClient, cancel: threading.Event) -> ConnectorOutput:
        output = ConnectorOutput(source=self.name)
        fetched_at = utc_now()

        skip = 0
        while skip < self.max_items:
            if cancel.is_set():
                output.cancelled = True
                break
            data = client.post_json(self.endpoint, body=self._body(window, skip), headers=self._headers())
            if not isinstance(data, dict):
                raise FatalParseError(f"Unexpected CitySpark payload for {self.name}")
            output.pages += 1

            items = data.get("Value") or []
            for item in items:
                admit(output, self.context, window, partial(self.build, item, fetched_at))

            if len(items) < self.page_size:
                break
            skip += self.page_size

        if skip >= self.max_items:
            output.truncated = True
        return output
