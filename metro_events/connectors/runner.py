"""Concurrent connector execution with fail-soft semantics and a hard deadline."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from metro_events.common.errors import PipelineError
from metro_events.common.fs import write_json
from metro_events.common.http import HttpClient
from metro_events.common.logging import log_event
from metro_events.common.models import RawListing
from metro_events.common.time_utils import TimeWindow
from metro_events.connectors.common import Connector, ConnectorOutput

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ConnectorJob:
    connector: Connector
    client: HttpClient


@dataclass
class SourceResult:
    source: str
    status: str
    listings: list[RawListing] = field(default_factory=list)
    counts: dict = field(default_factory=dict)
    duration_ms: int = 0
    error_code: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "status": self.status,
            "listings": len(self.listings),
            "counts": dict(self.counts),
            "duration_ms": self.duration_ms,
            "error_code": self.error_code,
            "message": self.message,
        }


def _run_one(job: ConnectorJob, window: TimeWindow, cancel: threading.Event, logger: logging.Logger) -> SourceResult:
    name = job.connector.name
    started = time.monotonic()
    log_event(logger, f"starting {name}", stage="fetch", source=name, event="SOURCE_START", status="start")
    try:
        output: ConnectorOutput = job.connector.fetch(window, job.client, cancel)
    except PipelineError as exc:
        result = SourceResult(
            source=name,
            status=STATUS_FAILED,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_code=exc.error_code,
            message=str(exc),
        )
    except Exception as exc:
        logger.exception("connector %s raised unexpectedly", name)
        result = SourceResult(
            source=name,
            status=STATUS_FAILED,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_code="UNEXPECTED_ERROR",
            message=f"{type(exc).__name__}: {exc}",
        )
    else:
        result = SourceResult(
            source=name,
            status=STATUS_OK,
            listings=list(output.listings),
            counts=output.counts(),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    log_event(
        logger,
        f"finished {name}: {result.status}",
        level=logging.INFO if result.succeeded else logging.ERROR,
        stage="fetch",
        source=name,
        event="SOURCE_DONE",
        status=result.status,
        duration_ms=result.duration_ms,
        rows_out=len(result.listings),
        error_code=result.error_code,
    )
    return result


def run_connectors(
    jobs: list[ConnectorJob],
    *,
    window: TimeWindow,
    max_workers: int,
    hard_timeout_seconds: float,
    logger: logging.Logger,
    raw_dump_dir: Path | None = None,
) -> list[SourceResult]:
    """Run every connector concurrently and return one result per job.

    Connectors still running at the deadline are signalled through their
    cancel event and reported as timed out; their threads are not joined.
    Results come back in job order.
    """
    if not jobs:
        return []

    cancels = {job.connector.name: threading.Event() for job in jobs}
    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(jobs))), thread_name_prefix="connector")
    futures: dict[str, Future] = {}
    try:
        for job in jobs:
            name = job.connector.name
            futures[name] = executor.submit(_run_one, job, window, cancels[name], logger)
        wait(list(futures.values()), timeout=hard_timeout_seconds)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    results: list[SourceResult] = []
    for job in jobs:
        name = job.connector.name
        future = futures[name]
        if future.done() and not future.cancelled():
            results.append(future.result())
            continue
        cancels[name].set()
        log_event(
            logger,
            f"{name} did not finish within {hard_timeout_seconds}s",
            level=logging.ERROR,
            stage="fetch",
            source=name,
            event="SOURCE_TIMEOUT",
            status=STATUS_TIMED_OUT,
            error_code="TIMED_OUT",
        )
        results.append(
            SourceResult(
                source=name,
                status=STATUS_TIMED_OUT,
                duration_ms=int(hard_timeout_seconds * 1000),
                error_code="TIMED_OUT",
                message=f"abandoned after {hard_timeout_seconds}s",
            )
        )

    if raw_dump_dir is not None:
        for result in results:
            if result.succeeded:
                write_json(raw_dump_dir / f"{result.source}.json", [listing.to_dict() for listing in result.listings])

    return results
