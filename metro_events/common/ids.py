"""Run and event identifier helpers."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone


def generate_run_id() -> str:
    now = datetime.now(tz=timezone.utc)
    # UUIDv7-like sortable id without external dependency.
    return now.strftime("run-%Y%m%dT%H%M%S%fZ")


def event_id_for(source: str, source_id: str) -> str:
    digest = hashlib.sha1(f"{source}:{source_id}".encode("utf-8")).hexdigest()
    return f"evt_{digest[:16]}"


def fallback_source_id(*parts: str | None) -> str:
    """Stable id for upstream rows that carry no identifier of their own."""
    raw = "|".join(part or "" for part in parts)
    return "h-" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
