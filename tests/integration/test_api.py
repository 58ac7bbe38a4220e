from __future__ import annotations

import asyncio
import copy
import dataclasses
import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from metro_events.api.app import create_app
from metro_events.common.models import DuplicateGroup
from metro_events.common.rate_limit import FixedWindowRateLimiter
from metro_events.pipeline.cache import CacheInvalidator
from metro_events.pipeline.store import EventStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SECRET = "s3cret-token"


@pytest.fixture
def store(make_event):
    with EventStore(":memory:") as db:
        events = [
            make_event("orange_peel_tm", "tm-1", venue="The Orange Peel", tags=("jazz", "music"), price=25.0),
            make_event(
                "grey_eagle",
                "ge-1",
                title="Bluegrass Jam",
                start_date=NOW + timedelta(days=2),
                venue="The Grey Eagle",
                tags=("bluegrass", "music"),
                price=0.0,
            ),
            make_event("avl_today", "101", title="Improv Night", start_date=NOW + timedelta(days=3), tags=("comedy",)),
            make_event("avl_today", "old", title="Last Week", start_date=NOW - timedelta(days=7), tags=("music",)),
        ]
        for event in events:
            db.write_group(DuplicateGroup(key=event.id, representative=event, members=(event,)))
        yield db


@pytest.fixture
def runs():
    return []


@pytest.fixture
def make_client(repo_bundle, store, runs):
    def _make(limiter=None):
        invalidator = CacheInvalidator()

        def trigger() -> dict:
            runs.append(invalidator.invalidate("test run"))
            return {"run_id": f"run-{len(runs)}", "status": "success"}

        app = create_app(
            repo_bundle,
            store=store,
            invalidator=invalidator,
            run_trigger=trigger,
            secret=SECRET,
            limiter=limiter,
            clock=lambda: NOW,
        )
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as test_client:
        yield test_client


def _auth(token: str = SECRET) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.integration
def test_health_reports_catalog_state(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "catalog_version": 0, "events": 4}


@pytest.mark.integration
@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Bearer short"},
        {"Authorization": "Bearer s3cret-tokeX"},
        {"Authorization": f"Basic {SECRET}"},
    ],
)
def test_cron_rejects_missing_or_wrong_tokens(client, runs, headers):
    response = client.post("/api/cron/run", headers=headers)
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}
    assert runs == []


@pytest.mark.integration
def test_cron_runs_with_valid_token_on_get_and_post(client, runs):
    assert client.post("/api/cron/run", headers=_auth()).json() == {"run_id": "run-1", "status": "success"}
    assert client.get("/api/cron/run", headers=_auth()).json() == {"run_id": "run-2", "status": "success"}
    assert runs == [1, 2]


@pytest.mark.integration
def test_rate_limit_returns_429_once_window_is_spent(make_client):
    with make_client(FixedWindowRateLimiter(limit=1, window_seconds=60)) as limited:
        assert limited.get("/api/events", params={"ids": "evt_x"}).status_code == 200
        response = limited.get("/api/events", params={"ids": "evt_x"})
    assert response.status_code == 429
    assert response.json() == {"detail": "Too Many Requests"}


@pytest.mark.integration
def test_batch_lookup_keeps_order_and_caps_id_count(client, make_event):
    jam = make_event("grey_eagle", "ge-1")
    jazz = make_event("orange_peel_tm", "tm-1")

    response = client.get("/api/events", params={"ids": f"{jam.id}, evt_missing,{jazz.id}"})
    assert response.status_code == 200
    assert [event["id"] for event in response.json()["events"]] == [jam.id, jazz.id]

    too_many = ",".join(f"evt_{i}" for i in range(101))
    assert client.get("/api/events", params={"ids": too_many}).status_code == 400


@pytest.mark.integration
def test_top30_lists_upcoming_events_in_tiers(client):
    body = client.get("/api/top30").json()

    assert body["generated_at"] == "2026-03-01T12:00:00+00:00"
    overall = body["tiers"]["overall"]
    assert [row["rank"] for row in overall] == [1, 2, 3]
    assert "Last Week" not in [row["title"] for row in overall]
    assert {row["title"] for row in body["tiers"]["music"]} == {"Jazz Night", "Bluegrass Jam"}
    assert [row["title"] for row in body["tiers"]["comedy"]] == ["Improv Night"]
    jam = next(row for row in overall if row["title"] == "Bluegrass Jam")
    assert jam["price_display"] == "Free"


@pytest.mark.integration
def test_calendar_feed_headers_etag_and_revalidation(client, runs):
    response = client.get("/api/top30/calendar")

    assert response.status_code == 200
    assert response.headers["content-type"] == "text/calendar; charset=utf-8"
    assert response.headers["cache-control"] == "public, max-age=3600"
    assert response.headers["content-disposition"] == 'attachment; filename="top30.ics"'
    assert response.text.startswith("BEGIN:VCALENDAR\r\n")
    assert response.text.count("BEGIN:VEVENT") == 3
    etag = response.headers["etag"]
    assert etag.startswith('"v0-')

    cached = client.get("/api/top30/calendar", headers={"If-None-Match": etag})
    assert cached.status_code == 304
    assert cached.content == b""

    client.post("/api/cron/run", headers=_auth())
    refreshed = client.get("/api/top30/calendar", headers={"If-None-Match": etag})
    assert refreshed.status_code == 200
    assert refreshed.headers["etag"].startswith('"v1-')


@pytest.mark.integration
def test_category_and_similar_lookups(client, make_event):
    jazz = make_event("orange_peel_tm", "tm-1")
    jam = make_event("grey_eagle", "ge-1")

    by_tag = client.get("/api/events/category/ Music ").json()
    assert by_tag["tag"] == "music"
    assert [event["id"] for event in by_tag["events"]] == [jam.id, jazz.id]
    assert len(client.get("/api/events/category/music", params={"limit": 1}).json()["events"]) == 1

    similar = client.get(f"/api/events/{jazz.id}/similar").json()
    assert [event["id"] for event in similar["events"]] == [jam.id]
    assert client.get("/api/events/evt_missing/similar").status_code == 404


@pytest.mark.integration
def test_hide_requires_auth_and_drops_events_from_tiers(client, make_event):
    jazz = make_event("orange_peel_tm", "tm-1")

    assert client.post("/api/events/hide", json={"ids": [jazz.id]}).status_code == 401
    assert client.post("/api/events/hide", json={"ids": []}, headers=_auth()).status_code == 422

    response = client.post("/api/events/hide", json={"ids": [jazz.id]}, headers=_auth())
    assert response.json() == {"hidden": 1, "catalog_version": 1}

    titles = [row["title"] for row in client.get("/api/top30").json()["tiers"]["overall"]]
    assert sorted(titles) == ["Bluegrass Jam", "Improv Night"]


@pytest.mark.integration
def test_hiding_a_representative_keeps_its_duplicate_visible(client, store, make_event):
    revue = make_event("orange_peel_tm", "tm-9", title="Funk Revue", start_date=NOW + timedelta(days=4), tags=("music",))
    listed = make_event("avl_today", "909", title="Funk Revue", start_date=NOW + timedelta(days=4), duplicate_of=revue.id)
    store.write_group(DuplicateGroup(key="funk", representative=revue, members=(revue, listed)))

    client.post("/api/events/hide", json={"ids": [revue.id]}, headers=_auth())

    assert store.get(listed.id).duplicate_of is None
    titles = [row["title"] for row in client.get("/api/top30").json()["tiers"]["overall"]]
    assert titles.count("Funk Revue") == 1


@pytest.mark.integration
def test_rate_limit_sweep_runs_off_the_event_loop(repo_bundle, store):
    pipeline = copy.deepcopy(repo_bundle.pipeline)
    pipeline["api"]["rate_limit"]["sweep_interval_seconds"] = 0.01
    bundle = dataclasses.replace(repo_bundle, pipeline=pipeline)
    swept = threading.Event()
    on_loop = []

    class RecordingLimiter(FixedWindowRateLimiter):
        def sweep(self) -> int:
            try:
                asyncio.get_running_loop()
                on_loop.append(True)
            except RuntimeError:
                on_loop.append(False)
            swept.set()
            return 0

    app = create_app(
        bundle,
        store=store,
        invalidator=CacheInvalidator(),
        run_trigger=dict,
        secret=SECRET,
        limiter=RecordingLimiter(limit=5, window_seconds=60),
        clock=lambda: NOW,
    )
    with TestClient(app):
        assert swept.wait(timeout=5)
    assert on_loop and not any(on_loop)
