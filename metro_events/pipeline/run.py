"""One scheduled ingestion run: fetch, normalise, dedupe, persist, invalidate."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable

from metro_events.common.config_loader import ConfigBundle
from metro_events.common.constants import EXIT_HARD_FAIL, EXIT_PARTIAL, EXIT_SUCCESS
from metro_events.common.errors import PersistenceError
from metro_events.common.http import HttpClient
from metro_events.common.ids import generate_run_id
from metro_events.common.logging import get_logger, log_event
from metro_events.common.models import CanonicalEvent, DuplicateConflict
from metro_events.common.time_utils import TimeWindow, build_window, to_utc_iso, utc_now
from metro_events.connectors.registry import build_connector
from metro_events.connectors.runner import STATUS_TIMED_OUT, ConnectorJob, SourceResult, run_connectors
from metro_events.pipeline.cache import CacheInvalidator
from metro_events.pipeline.dedupe import DedupPolicy, deduplicate, promote_orphans
from metro_events.pipeline.normalise import normalise_batch
from metro_events.pipeline.reports import write_run_summary
from metro_events.pipeline.store import EventStore

RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    window: TimeWindow
    sources: list[SourceResult] = field(default_factory=list)
    normalise_errors: dict[str, int] = field(default_factory=dict)
    filtered_skipped: int = 0
    candidates: int = 0
    groups: int = 0
    written: int = 0
    write_failures: list[dict] = field(default_factory=list)
    stale_hidden: dict[str, int] = field(default_factory=dict)
    promoted: int = 0
    conflicts: list[DuplicateConflict] = field(default_factory=list)
    catalog_version: int | None = None
    duration_ms: int = 0

    @property
    def failed_sources(self) -> list[str]:
        return [result.source for result in self.sources if not result.succeeded]

    @property
    def status(self) -> str:
        if self.sources and len(self.failed_sources) == len(self.sources):
            return RUN_FAILED
        if self.failed_sources or self.write_failures:
            return RUN_PARTIAL
        return RUN_SUCCESS

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": to_utc_iso(self.started_at),
            "window": {"start": to_utc_iso(self.window.start), "end": to_utc_iso(self.window.end)},
            "sources": [result.to_dict() for result in self.sources],
            "normalise_errors": dict(sorted(self.normalise_errors.items())),
            "filtered_skipped": self.filtered_skipped,
            "candidates": self.candidates,
            "groups": self.groups,
            "written": self.written,
            "write_failures": list(self.write_failures),
            "stale_hidden": dict(sorted(self.stale_hidden.items())),
            "promoted": self.promoted,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "catalog_version": self.catalog_version,
            "duration_ms": self.duration_ms,
        }


def exit_code_for(summary: RunSummary, *, strict: bool = False) -> int:
    if summary.status == RUN_FAILED and strict:
        return EXIT_HARD_FAIL
    if summary.status != RUN_SUCCESS:
        return EXIT_PARTIAL
    return EXIT_SUCCESS


def build_jobs(
    bundle: ConfigBundle,
    source_cfgs: Iterable[dict],
    *,
    environ: dict[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> list[ConnectorJob]:
    region = bundle.region
    http_cfg = bundle.pipeline["http"]
    jobs = []
    for source_cfg in source_cfgs:
        extra = {}
        if source_cfg.get("rate_per_sec") is not None:
            extra["rate_per_sec"] = float(source_cfg["rate_per_sec"])
        client = HttpClient.from_config(http_cfg, logger=logger, log_fields={"source": source_cfg["name"]}, **extra)
        connector = build_connector(source_cfg, region, environ=environ, logger=logger)
        jobs.append(ConnectorJob(connector=connector, client=client))
    return jobs


def batch_span(events: list[CanonicalEvent]) -> TimeWindow | None:
    if not events:
        return None
    starts = [event.start_date for event in events]
    return TimeWindow(start=min(starts), end=max(starts))


def merge_with_persisted(fresh: list[CanonicalEvent], persisted: list[CanonicalEvent]) -> list[CanonicalEvent]:
    """Fresh sightings replace their stored copies but keep the stored id and first sighting."""
    pool = {event.key: event for event in persisted}
    for event in fresh:
        stored = pool.get(event.key)
        if stored is not None:
            event = event.evolve(id=stored.id, first_seen_at=stored.first_seen_at or event.first_seen_at)
        pool[event.key] = event
    return [pool[key] for key in sorted(pool)]


def _unique_by_key(events: list[CanonicalEvent]) -> list[CanonicalEvent]:
    latest: dict[tuple[str, str], CanonicalEvent] = {}
    for event in events:
        current = latest.get(event.key)
        if current is None or (event.last_seen_at, event.id) >= (current.last_seen_at, current.id):
            latest[event.key] = event
    return list(latest.values())


def _hide_stale(summary: RunSummary, store: EventStore, window: TimeWindow, logger: logging.Logger) -> None:
    for result in summary.sources:
        # A partial listing says nothing about what vanished upstream.
        if not result.succeeded or result.counts.get("cancelled") or result.counts.get("truncated"):
            continue
        seen = {listing.source_id for listing in result.listings}
        try:
            hidden = store.hide_stale(result.source, window, seen)
        except PersistenceError as exc:
            summary.write_failures.append({"key": f"stale:{result.source}", "error_code": exc.error_code, "message": str(exc)})
            log_event(
                logger,
                str(exc),
                level=logging.ERROR,
                stage="persist",
                source=result.source,
                event="STALE_FAIL",
                status="error",
                error_code=exc.error_code,
            )
            continue
        summary.stale_hidden[result.source] = hidden
        if hidden:
            log_event(logger, f"hid {hidden} stale listings", stage="persist", source=result.source, event="STALE_HIDDEN", status="ok", rows_out=hidden)


def _promote_orphans(summary: RunSummary, store: EventStore, policy: DedupPolicy, logger: logging.Logger) -> None:
    try:
        groups = promote_orphans(store, policy)
    except PersistenceError as exc:
        summary.write_failures.append({"key": "promote", "error_code": exc.error_code, "message": str(exc)})
        log_event(logger, str(exc), level=logging.ERROR, stage="persist", event="PROMOTE_FAIL", status="error", error_code=exc.error_code)
        return
    summary.promoted = len(groups)
    if groups:
        log_event(logger, f"promoted {len(groups)} replacement representatives", stage="persist", event="DUPLICATES_PROMOTED", status="ok", rows_out=len(groups))


def close_clients(jobs: list[ConnectorJob], results: list[SourceResult], logger: logging.Logger) -> None:
    # Abandoned connector threads may still hold these sessions; they will see
    # connection errors once closed, which is expected.
    abandoned = sorted(result.source for result in results if result.status == STATUS_TIMED_OUT)
    if abandoned:
        log_event(
            logger,
            f"closing sessions of abandoned sources: {', '.join(abandoned)}",
            level=logging.WARNING,
            stage="fetch",
            event="SESSIONS_CLOSED",
            status=STATUS_TIMED_OUT,
            rows_in=len(abandoned),
        )
    for job in jobs:
        job.client.close()


def run_pipeline(
    bundle: ConfigBundle,
    *,
    store: EventStore,
    invalidator: CacheInvalidator,
    source_cfgs: Iterable[dict] | None = None,
    jobs: list[ConnectorJob] | None = None,
    run_id: str | None = None,
    now: datetime | None = None,
    data_dir: Path | None = None,
    environ: dict[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> RunSummary:
    """Execute one run and return its summary.

    Source, listing and group failures are recorded in the summary rather
    than raised. The catalog version is bumped whatever happens.
    """
    run_id = run_id or generate_run_id()
    logger = logger or get_logger("run")
    now = now or utc_now()
    started = time.monotonic()
    run_cfg = bundle.pipeline["run"]
    window = build_window(now, int(run_cfg["window_days"]))
    summary = RunSummary(run_id=run_id, started_at=now, window=window)

    owned = jobs is None
    if jobs is None:
        cfgs = bundle.enabled_sources() if source_cfgs is None else list(source_cfgs)
        jobs = build_jobs(bundle, cfgs, environ=os.environ if environ is None else environ, logger=logger)

    raw_dump_dir = None
    if data_dir is not None and bundle.pipeline["output"].get("write_raw_dumps"):
        raw_dump_dir = data_dir / "raw"

    log_event(logger, f"run {run_id} start", run_id=run_id, stage="run", event="RUN_START", status="start", rows_in=len(jobs))
    try:
        summary.sources = run_connectors(
            jobs,
            window=window,
            max_workers=int(run_cfg["max_workers"]),
            hard_timeout_seconds=float(run_cfg["hard_timeout_seconds"]),
            logger=logger,
            raw_dump_dir=raw_dump_dir,
        )
        listings = [listing for result in summary.sources for listing in result.listings]

        normalised = normalise_batch(listings, bundle.region, logger)
        summary.normalise_errors = normalised.errors

        filtered = store.filtered_keys()
        fresh = [event for event in _unique_by_key(normalised.events) if event.key not in filtered]
        summary.filtered_skipped = len(normalised.events) - len(fresh)

        # Vanished listings leave the pool before grouping so a stale
        # representative is replaced in this same run.
        _hide_stale(summary, store, window, logger)

        span = batch_span(fresh)
        persisted = store.events_in_window(span) if span is not None else []
        pool = merge_with_persisted(fresh, persisted)
        summary.candidates = len(pool)

        policy = DedupPolicy.from_config(bundle.policy)
        result = deduplicate(pool, policy)
        summary.groups = len(result.groups)
        summary.conflicts = list(result.conflicts)
        for conflict in result.conflicts:
            log_event(
                logger,
                f"{conflict.key} resolved by {conflict.decided_by}",
                level=logging.DEBUG,
                stage="dedupe",
                event="DUPLICATE_CONFLICT",
                status="ok",
                rows_in=len(conflict.member_ids),
            )

        for group in result.groups:
            try:
                summary.written += store.write_group(group)
            except PersistenceError as exc:
                summary.write_failures.append({"key": group.key, "error_code": exc.error_code, "message": str(exc)})
                log_event(
                    logger,
                    str(exc),
                    level=logging.ERROR,
                    stage="persist",
                    event="GROUP_WRITE_FAIL",
                    status="error",
                    error_code=exc.error_code,
                )

        _promote_orphans(summary, store, policy, logger)
    finally:
        summary.catalog_version = invalidator.invalidate(f"run {run_id}")
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        if owned:
            close_clients(jobs, summary.sources, logger)

    log_event(
        logger,
        f"run {run_id} {summary.status}",
        level=logging.INFO if summary.status == RUN_SUCCESS else logging.WARNING,
        run_id=run_id,
        stage="run",
        event="RUN_END",
        status=summary.status,
        duration_ms=summary.duration_ms,
        rows_in=summary.candidates,
        rows_out=summary.written,
    )
    if data_dir is not None:
        write_run_summary(data_dir, summary.to_dict())
    return summary
