import itertools
from datetime import datetime, timedelta, timezone

import pytest

from metro_events.pipeline.dedupe import (
    DECIDED_COMPLETENESS,
    DECIDED_FIRST_SEEN,
    DECIDED_SINGLE,
    DECIDED_TRUST,
    DedupPolicy,
    dedup_key,
    deduplicate,
)


@pytest.fixture
def policy(repo_bundle) -> DedupPolicy:
    return DedupPolicy.from_config(repo_bundle.policy)


def test_jazz_night_collapses_to_most_trusted_source(make_event, policy):
    aggregator = make_event("avl_today", "a-1", title="Jazz Night!", description="Long description", image_url="https://img.test/a.jpg")
    venue = make_event("orange_peel_tm", "tm-9", title="JAZZ NIGHT")

    result = deduplicate([aggregator, venue], policy)

    assert len(result.groups) == 1
    group = result.groups[0]
    assert group.representative.id == venue.id
    assert group.decided_by == DECIDED_TRUST
    assert group.cross_source
    flagged = [member for member in group.members if member.duplicate_of]
    assert [member.id for member in flagged] == [aggregator.id]
    assert flagged[0].duplicate_of == venue.id
    assert len(result.conflicts) == 1
    assert result.conflicts[0].representative_id == venue.id


def test_substantive_title_differences_never_collapse(make_event, policy):
    events = [
        make_event("avl_today", "1", title="Jazz Night"),
        make_event("orange_peel_tm", "2", title="Jazz Night: Big Band Edition"),
    ]
    result = deduplicate(events, policy)
    assert len(result.groups) == 2
    assert result.conflicts == ()


def test_same_title_different_minute_stays_separate(make_event, policy):
    first = make_event("avl_today", "1")
    second = make_event("orange_peel_tm", "2", start_date=first.start_date + timedelta(minutes=1))
    assert dedup_key(first) != dedup_key(second)
    assert len(deduplicate([first, second], policy).groups) == 2


def test_seconds_do_not_split_a_group(make_event, policy):
    first = make_event("avl_today", "1")
    second = make_event("orange_peel_tm", "2", start_date=first.start_date + timedelta(seconds=30))
    assert len(deduplicate([first, second], policy).groups) == 1


def test_completeness_breaks_trust_ties(make_event, policy):
    sparse = make_event("zz_unknown", "1")
    rich = make_event("aa_unknown", "2", description="Details", image_url="https://img.test/x.jpg", price=10.0)

    group = deduplicate([sparse, rich], policy).groups[0]

    assert group.representative.id == rich.id
    assert group.decided_by == DECIDED_COMPLETENESS


def test_first_seen_breaks_completeness_ties(make_event, policy):
    older = make_event("zz_unknown", "1", first_seen_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    newer = make_event("aa_unknown", "2", first_seen_at=datetime(2026, 2, 1, tzinfo=timezone.utc))

    group = deduplicate([newer, older], policy).groups[0]

    assert group.representative.id == older.id
    assert group.decided_by == DECIDED_FIRST_SEEN


def test_unknown_sources_rank_after_configured_ones(make_event, policy):
    unknown = make_event("pop_up_blog", "1", description="Details", image_url="https://img.test/x.jpg", price=0.0)
    configured = make_event("eventbrite", "2")
    assert deduplicate([unknown, configured], policy).groups[0].representative.id == configured.id


def test_same_source_entries_prefer_latest_sighting(make_event, policy):
    stale = make_event("avl_today", "old", last_seen_at=datetime(2026, 2, 1, tzinfo=timezone.utc))
    fresh = make_event("avl_today", "new", last_seen_at=datetime(2026, 3, 1, tzinfo=timezone.utc))

    group = deduplicate([stale, fresh], policy).groups[0]

    assert group.representative.id == fresh.id
    assert group.decided_by == DECIDED_SINGLE
    assert not group.cross_source
    assert [member.duplicate_of for member in group.members] == [None, fresh.id]


def test_grouping_is_independent_of_input_order(make_event, policy):
    events = [
        make_event("avl_today", "1", description="A"),
        make_event("orange_peel_tm", "2"),
        make_event("eventbrite", "3", image_url="https://img.test/3.jpg"),
        make_event("grey_eagle", "4", title="Open Mic"),
    ]
    expected = deduplicate(events, policy)
    for permutation in itertools.permutations(events):
        assert deduplicate(list(permutation), policy) == expected


def test_deduplicate_is_idempotent(make_event, policy):
    events = [
        make_event("avl_today", "1"),
        make_event("orange_peel_tm", "2"),
        make_event("eventbrite", "3", title="Open Mic"),
    ]
    first = deduplicate(events, policy)
    second = deduplicate(first.events, policy)
    assert second == first


def test_representative_is_not_mutated_beyond_duplicate_flag(make_event, policy):
    venue = make_event("orange_peel_tm", "tm-9", duplicate_of="evt_previous")
    group = deduplicate([venue, make_event("avl_today", "a-1")], policy).groups[0]
    assert group.representative == venue.evolve(duplicate_of=None)
