"""HTTP surface: scheduler trigger, ranked tiers, calendar feed and event lookups."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from metro_events.common.auth import require_bearer_token
from metro_events.common.config_loader import ConfigBundle
from metro_events.common.errors import AuthorizationError
from metro_events.common.logging import get_logger, log_event
from metro_events.common.rate_limit import FixedWindowRateLimiter
from metro_events.common.time_utils import utc_now
from metro_events.pipeline.cache import CacheInvalidator, VersionedCache
from metro_events.pipeline.dedupe import DedupPolicy, promote_orphans
from metro_events.pipeline.feed import render_calendar
from metro_events.pipeline.rank import OVERALL_TIER, RankPolicy, build_tiers, tier_events
from metro_events.pipeline.reports import tiers_payload
from metro_events.pipeline.store import EventStore

CALENDAR_MEDIA_TYPE = "text/calendar; charset=utf-8"
CALENDAR_FILENAME = "top30.ics"

RunTrigger = Callable[[], dict]


class HideRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def create_app(
    bundle: ConfigBundle,
    *,
    store: EventStore,
    invalidator: CacheInvalidator,
    run_trigger: RunTrigger,
    secret: str | None,
    limiter: FixedWindowRateLimiter | None = None,
    clock: Callable[[], datetime] = utc_now,
    logger: logging.Logger | None = None,
) -> FastAPI:
    api_cfg = bundle.pipeline["api"]
    policy = RankPolicy.from_config(bundle.policy)
    dedup_policy = DedupPolicy.from_config(bundle.policy)
    limiter = limiter or FixedWindowRateLimiter.from_config(api_cfg["rate_limit"])
    cache = VersionedCache(invalidator)
    logger = logger or get_logger("api")
    run_lock = threading.Lock()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async def sweep_forever() -> None:
            interval = float(api_cfg["rate_limit"]["sweep_interval_seconds"])
            while True:
                await asyncio.sleep(interval)
                removed = await asyncio.to_thread(limiter.sweep)
                log_event(logger, f"swept {removed} rate limit entries", level=logging.DEBUG, stage="api", event="RATE_LIMIT_SWEEP", status="ok", rows_out=removed)

        task = asyncio.create_task(sweep_forever())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="metro-events", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.invalidator = invalidator
    app.state.limiter = limiter

    def enforce_rate_limit(request: Request) -> None:
        if limiter.is_limited(_client_key(request)):
            raise HTTPException(status_code=429, detail="Too Many Requests")

    def require_cron_auth(authorization: str | None = Header(default=None)) -> None:
        try:
            require_bearer_token(authorization, secret)
        except AuthorizationError:
            raise HTTPException(status_code=401, detail="Unauthorized") from None

    def current_tiers() -> dict:
        def compute() -> dict:
            now = clock()
            events = store.visible_events(since=now)
            return {"generated_at": now, "events": events, "tiers": build_tiers(events, policy, now)}

        return cache.get_or_compute("tiers", compute)

    def calendar_body() -> tuple[str, str]:
        def compute() -> tuple[str, str]:
            snapshot = current_tiers()
            events = tier_events(snapshot["tiers"][OVERALL_TIER], snapshot["events"])
            body = render_calendar(
                events,
                calendar_name=api_cfg["calendar_name"],
                domain=api_cfg["feed_domain"],
                generated_at=snapshot["generated_at"],
            )
            digest = hashlib.sha1(body.encode("utf-8")).hexdigest()[:12]
            return body, f'"v{invalidator.version}-{digest}"'

        return cache.get_or_compute("calendar", compute)

    def trigger_run() -> dict:
        if not run_lock.acquire(blocking=False):
            raise HTTPException(status_code=409, detail="Run already in progress")
        try:
            return run_trigger()
        finally:
            run_lock.release()

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "catalog_version": invalidator.version, "events": store.count()}

    @app.post("/api/cron/run", dependencies=[Depends(enforce_rate_limit), Depends(require_cron_auth)])
    def cron_run_post() -> dict:
        return trigger_run()

    @app.get("/api/cron/run", dependencies=[Depends(enforce_rate_limit), Depends(require_cron_auth)])
    def cron_run_get() -> dict:
        return trigger_run()

    @app.get("/api/top30")
    def top30() -> dict:
        snapshot = current_tiers()
        return {
            "generated_at": snapshot["generated_at"].isoformat(timespec="seconds"),
            "catalog_version": invalidator.version,
            "tiers": tiers_payload(snapshot["tiers"], snapshot["events"]),
        }

    @app.get("/api/top30/calendar")
    def top30_calendar(if_none_match: str | None = Header(default=None)) -> Response:
        body, etag = calendar_body()
        headers = {
            "Cache-Control": f"public, max-age={int(api_cfg['calendar_max_age_seconds'])}",
            "ETag": etag,
            "Content-Disposition": f'attachment; filename="{CALENDAR_FILENAME}"',
        }
        if if_none_match == etag:
            return Response(status_code=304, headers=headers)
        return Response(content=body, media_type=CALENDAR_MEDIA_TYPE, headers=headers)

    @app.get("/api/events", dependencies=[Depends(enforce_rate_limit)])
    def events_batch(ids: str = Query(default="")) -> dict:
        wanted = [item.strip() for item in ids.split(",") if item.strip()]
        if len(wanted) > int(api_cfg["max_batch_ids"]):
            raise HTTPException(status_code=400, detail=f"At most {api_cfg['max_batch_ids']} ids per request")
        return {"events": [event.to_dict() for event in store.get_many(wanted)]}

    @app.get("/api/events/category/{tag}")
    def events_by_tag(tag: str, limit: int = Query(default=50, ge=1, le=200)) -> dict:
        found = store.by_tag(tag, since=clock(), limit=limit)
        return {"tag": tag.strip().casefold(), "events": [event.to_dict() for event in found]}

    @app.get("/api/events/{event_id}/similar")
    def similar_events(event_id: str) -> dict:
        if store.get(event_id) is None:
            raise HTTPException(status_code=404, detail="Event not found")
        found = store.similar_to(event_id, since=clock(), limit=int(api_cfg["similar_limit"]))
        return {"event_id": event_id, "events": [event.to_dict() for event in found]}

    @app.post("/api/events/hide", dependencies=[Depends(enforce_rate_limit), Depends(require_cron_auth)])
    def hide_events(payload: HideRequest) -> dict:
        hidden = store.hide(payload.ids)
        promote_orphans(store, dedup_policy)
        version = invalidator.invalidate(f"hid {hidden} events")
        return {"hidden": hidden, "catalog_version": version}

    return app
