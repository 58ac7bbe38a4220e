"""Run summary and tier report writers."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from metro_events.common.fs import read_json, write_json
from metro_events.common.models import CanonicalEvent, ScoreRecord
from metro_events.common.price import format_price


def reports_dir(data_dir: Path) -> Path:
    return data_dir / "out" / "reports"


def write_run_summary(data_dir: Path, summary: dict) -> Path:
    path = reports_dir(data_dir) / f"{summary['run_id']}.json"
    write_json(path, summary)
    write_json(reports_dir(data_dir) / "latest.json", summary)
    return path


def read_latest_summary(data_dir: Path) -> dict | None:
    path = reports_dir(data_dir) / "latest.json"
    if not path.exists():
        return None
    return read_json(path)


def tier_payload(records: list[ScoreRecord], events: Iterable[CanonicalEvent]) -> list[dict]:
    by_id = {event.id: event for event in events}
    rows = []
    for record in records:
        event = by_id.get(record.event_id)
        if event is None:
            continue
        row = event.to_dict()
        row["price_display"] = format_price(event.price)
        row["score"] = record.score
        row["rank"] = record.rank
        row["explanation"] = record.explanation
        rows.append(row)
    return rows


def tiers_payload(tiers: dict[str, list[ScoreRecord]], events: Iterable[CanonicalEvent]) -> dict[str, list[dict]]:
    pool = list(events)
    return {name: tier_payload(records, pool) for name, records in tiers.items()}
