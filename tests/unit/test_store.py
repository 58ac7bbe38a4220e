from datetime import datetime, timedelta, timezone

import pytest

from metro_events.common.errors import PersistenceError
from metro_events.common.models import DuplicateGroup
from metro_events.common.time_utils import TimeWindow
from metro_events.pipeline.dedupe import DedupPolicy, deduplicate, promote_orphans
from metro_events.pipeline.store import EventStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = TimeWindow(start=NOW, end=NOW + timedelta(days=60))


@pytest.fixture
def store():
    with EventStore(":memory:") as db:
        yield db


def _single(event) -> DuplicateGroup:
    return DuplicateGroup(key=event.id, representative=event, members=(event,))


def test_upsert_preserves_id_and_first_seen(store, make_event):
    first = make_event("avl_today", "1", title="Jazz Night")
    store.write_group(_single(first))

    later = first.evolve(
        title="Jazz Night (Updated)",
        first_seen_at=NOW + timedelta(days=1),
        last_seen_at=NOW + timedelta(days=1),
    )
    store.write_group(_single(later))

    stored = store.get(first.id)
    assert store.count() == 1
    assert stored.title == "Jazz Night (Updated)"
    assert stored.first_seen_at == first.first_seen_at
    assert stored.last_seen_at == NOW + timedelta(days=1)


def test_round_trip_keeps_fields(store, make_event):
    event = make_event("orange_peel_tm", "tm-1", price=12.5, tags=("music", "rock"), venue="The Orange Peel")
    store.write_group(_single(event))
    assert store.get(event.id) == event


def test_duplicates_are_excluded_from_visible_queries(store, make_event, repo_bundle):
    result = deduplicate(
        [make_event("avl_today", "1"), make_event("orange_peel_tm", "2")],
        DedupPolicy.from_config(repo_bundle.policy),
    )
    for group in result.groups:
        store.write_group(group)

    visible = store.visible_events()
    assert [event.source for event in visible] == ["orange_peel_tm"]
    assert len(store.events_in_window(WINDOW)) == 2
    assert len(store.events_in_window(WINDOW, include_duplicates=False)) == 1


def test_get_many_keeps_request_order_and_skips_hidden(store, make_event):
    a = make_event("avl_today", "a", title="A")
    b = make_event("avl_today", "b", title="B")
    hidden = make_event("avl_today", "c", title="C", hidden=True, hidden_reason="stale")
    for event in (a, b, hidden):
        store.write_group(_single(event))

    assert [event.id for event in store.get_many([b.id, hidden.id, a.id, "missing"])] == [b.id, a.id]
    assert store.get_many([]) == []


def test_hide_stale_only_touches_unseen_listings_of_that_source(store, make_event):
    kept = make_event("avl_today", "kept", title="Kept")
    gone = make_event("avl_today", "gone", title="Gone")
    other = make_event("eventbrite", "gone", title="Other Source")
    for event in (kept, gone, other):
        store.write_group(_single(event))

    assert store.hide_stale("avl_today", WINDOW, {"kept"}) == 1

    assert store.get(gone.id).hidden_reason == "stale"
    assert not store.get(kept.id).hidden
    assert not store.get(other.id).hidden


def test_resighting_clears_stale_but_not_filtered(store, make_event):
    stale = make_event("avl_today", "s", title="Stale")
    filtered = make_event("avl_today", "f", title="Filtered")
    store.write_group(_single(stale))
    store.write_group(_single(filtered))
    store.hide_stale("avl_today", WINDOW, set())
    store.hide([filtered.id])

    store.write_group(_single(stale))
    store.write_group(_single(filtered))

    assert not store.get(stale.id).hidden
    assert store.get(filtered.id).hidden_reason == "filtered"
    assert store.filtered_keys() == {("avl_today", "f")}


def test_by_tag_and_similar_to(store, make_event):
    anchor = make_event("avl_today", "1", title="Bluegrass Jam", tags=("bluegrass", "music"), venue="Grey Eagle")
    same_tags = make_event("avl_today", "2", title="Banjo Night", tags=("bluegrass", "music"))
    same_venue = make_event("avl_today", "3", title="Trivia", venue="grey eagle")
    unrelated = make_event("avl_today", "4", title="Yoga", tags=("wellness",))
    for event in (anchor, same_tags, same_venue, unrelated):
        store.write_group(_single(event))

    assert [event.id for event in store.by_tag("Music")] == sorted([anchor.id, same_tags.id])
    assert store.by_tag("music", limit=1) == store.by_tag("music")[:1]
    assert [event.id for event in store.similar_to(anchor.id)] == [same_tags.id, same_venue.id]
    assert store.similar_to("evt_missing") == []


def test_write_failure_raises_persistence_error(store, make_event):
    event = make_event("avl_today", "1", price=-1.0)
    with pytest.raises(PersistenceError):
        store.write_group(_single(event))
    assert store.count() == 0


def test_group_write_is_atomic(store, make_event):
    good = make_event("avl_today", "1")
    bad = make_event("eventbrite", "2", price=-3.0, duplicate_of=good.id)
    with pytest.raises(PersistenceError):
        store.write_group(DuplicateGroup(key="k", representative=good, members=(good, bad)))
    assert store.count() == 0


def test_hiding_a_representative_promotes_the_next_trusted_member(store, make_event, repo_bundle):
    policy = DedupPolicy.from_config(repo_bundle.policy)
    members = [make_event("avl_today", "1"), make_event("orange_peel_tm", "2"), make_event("grey_eagle", "3")]
    (group,) = deduplicate(members, policy).groups
    store.write_group(group)
    assert group.representative.source == "orange_peel_tm"

    store.hide([group.representative.id])
    assert set(store.orphaned_duplicates()) == {group.representative.id}

    (promoted,) = promote_orphans(store, policy)

    assert promoted.representative.source == "grey_eagle"
    assert [event.source for event in store.visible_events()] == ["grey_eagle"]
    assert store.get(members[0].id).duplicate_of == promoted.representative.id
    assert store.orphaned_duplicates() == {}


def test_catalog_version_starts_at_zero_and_counts_bumps(store):
    assert store.catalog_version() == 0
    assert store.bump_catalog_version() == 1
    assert store.bump_catalog_version() == 2
    assert store.catalog_version() == 2
