from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from metro_events.common.config_loader import load_all_configs
from metro_events.common.ids import event_id_for
from metro_events.common.models import CanonicalEvent, RawListing

REPO_ROOT = Path(__file__).resolve().parents[1]
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
JAZZ_START = datetime(2026, 3, 6, 1, 0, tzinfo=timezone.utc)


def _event(source: str = "avl_today", source_id: str = "1", **fields) -> CanonicalEvent:
    fields.setdefault("title", "Jazz Night")
    fields.setdefault("start_date", JAZZ_START)
    fields.setdefault("first_seen_at", NOW)
    fields.setdefault("last_seen_at", NOW)
    return CanonicalEvent(id=event_id_for(source, source_id), source=source, source_id=source_id, **fields)


def _listing(source: str = "avl_today", source_id: str = "1", **fields) -> RawListing:
    fields.setdefault("title", "Jazz Night")
    fields.setdefault("start", JAZZ_START)
    fields.setdefault("fetched_at", NOW)
    return RawListing(source=source, source_id=source_id, **fields)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_event():
    return _event


@pytest.fixture
def make_listing():
    return _listing


@pytest.fixture
def repo_config_dir() -> Path:
    return REPO_ROOT / "config"


@pytest.fixture
def repo_bundle(repo_config_dir: Path):
    return load_all_configs(repo_config_dir)
