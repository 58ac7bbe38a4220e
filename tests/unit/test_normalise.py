from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from metro_events.common.errors import FatalParseError
from metro_events.common.ids import event_id_for
from metro_events.pipeline.normalise import normalise_batch, normalise_listing


def test_normalise_listing_builds_canonical_event(make_listing):
    listing = make_listing(
        source="grey_eagle",
        source_id="ge-1",
        title="  Jazz &amp; Blues  Night ",
        start=datetime(2026, 3, 5, 20, 0, tzinfo=ZoneInfo("America/New_York")),
        venue=" The Grey Eagle ",
        price_raw="$15.00",
        description_raw="**Great** show at the Grey Eagle, Asheville, NC.",
        tags=("Music", " live  music", "music"),
    )

    event = normalise_listing(listing, region_code="AVL", city="Asheville", state="NC")

    assert event.id == event_id_for("grey_eagle", "ge-1")
    assert event.title == "Jazz & Blues Night"
    assert event.start_date == datetime(2026, 3, 6, 1, 0, tzinfo=timezone.utc)
    assert event.venue == "The Grey Eagle"
    assert event.price == 15.0
    assert event.description == "Great show at the Grey Eagle."
    assert event.tags == ("live music", "music")
    assert event.geo.region == "AVL"
    assert event.first_seen_at == event.last_seen_at == listing.fetched_at


def test_normalise_listing_drops_end_before_start(make_listing):
    listing = make_listing(end=datetime(2026, 3, 5, 0, 0, tzinfo=timezone.utc))
    assert normalise_listing(listing, region_code="AVL").end_date is None


def test_normalise_listing_keeps_valid_end(make_listing):
    start = datetime(2026, 3, 6, 1, 0, tzinfo=timezone.utc)
    listing = make_listing(start=start, end=start + timedelta(hours=3))
    assert normalise_listing(listing, region_code="AVL").end_date == start + timedelta(hours=3)


def test_normalise_listing_price_text_fallback(make_listing):
    listing = make_listing(price_raw=None, description_raw="Free admission, all ages")
    assert normalise_listing(listing, region_code="AVL").price == 0.0

    unknown = make_listing(price_raw="TBA", description_raw="Doors at 7")
    assert normalise_listing(unknown, region_code="AVL").price is None


def test_normalise_listing_rejects_missing_title_or_naive_start(make_listing):
    with pytest.raises(FatalParseError):
        normalise_listing(make_listing(title="   "), region_code="AVL")
    with pytest.raises(FatalParseError):
        normalise_listing(make_listing(start=datetime(2026, 3, 5, 20, 0)), region_code="AVL")


def test_normalise_listing_is_deterministic(make_listing):
    listing = make_listing(description_raw="<b>Hi</b> &amp; welcome", price_raw="12")
    assert normalise_listing(listing, region_code="AVL") == normalise_listing(listing, region_code="AVL")


def test_normalise_batch_counts_errors_per_source(make_listing, repo_bundle):
    listings = [
        make_listing(source="avl_today", source_id="ok"),
        make_listing(source="avl_today", source_id="bad", title=""),
        make_listing(source="eventbrite", source_id="bad", start=datetime(2026, 3, 5, 20, 0)),
    ]

    result = normalise_batch(listings, repo_bundle.region)

    assert [event.source_id for event in result.events] == ["ok"]
    assert result.errors == {"avl_today": 1, "eventbrite": 1}
