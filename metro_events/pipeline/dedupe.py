"""Cross-source duplicate grouping and representative selection."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Iterable

from metro_events.common.models import CanonicalEvent, DuplicateConflict, DuplicateGroup
from metro_events.common.text import normalise_title_key
from metro_events.common.time_utils import minute_bucket
from metro_events.pipeline.store import EventStore

DECIDED_SINGLE = "single"
DECIDED_TRUST = "trust"
DECIDED_COMPLETENESS = "completeness"
DECIDED_FIRST_SEEN = "first_seen"

COMPLETENESS_CHECKS: dict[str, Callable[[CanonicalEvent], bool]] = {
    "description": lambda event: bool(event.description),
    "image": lambda event: bool(event.image_url),
    "price": lambda event: event.price is not None,
    "end": lambda event: event.end_date is not None,
    "venue": lambda event: bool(event.venue),
}


@dataclass(frozen=True)
class DedupPolicy:
    trust_ranking: tuple[str, ...] = ()
    completeness_weights: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_config(cls, policy_cfg: dict) -> "DedupPolicy":
        return cls(
            trust_ranking=tuple(policy_cfg["trust"]["ranking"]),
            completeness_weights={k: float(v) for k, v in policy_cfg["completeness"]["weights"].items()},
        )

    def trust_rank(self, source: str) -> int:
        try:
            return self.trust_ranking.index(source)
        except ValueError:
            return len(self.trust_ranking)

    def completeness(self, event: CanonicalEvent) -> float:
        return sum(
            weight
            for name, weight in sorted(self.completeness_weights.items())
            if COMPLETENESS_CHECKS[name](event)
        )


@dataclass(frozen=True)
class DedupResult:
    groups: tuple[DuplicateGroup, ...]
    conflicts: tuple[DuplicateConflict, ...]

    @property
    def events(self) -> list[CanonicalEvent]:
        return [member for group in self.groups for member in group.members]

    @property
    def representatives(self) -> list[CanonicalEvent]:
        return [group.representative for group in self.groups]


def dedup_key(event: CanonicalEvent) -> str:
    return f"{normalise_title_key(event.title)}|{minute_bucket(event.start_date)}"


def _seen_ts(value) -> float:
    return value.timestamp() if value is not None else math.inf


def _collapse_same_source(members: Iterable[CanonicalEvent]) -> list[CanonicalEvent]:
    """Keep one entry per source: most recently fetched, then smallest source_id."""
    best: dict[str, CanonicalEvent] = {}
    for member in members:
        current = best.get(member.source)
        if current is None or _recency_key(member) < _recency_key(current):
            best[member.source] = member
    return [best[source] for source in sorted(best)]


def _recency_key(event: CanonicalEvent) -> tuple:
    return (-event.last_seen_at.timestamp() if event.last_seen_at else math.inf, event.source_id)


def _selection_key(event: CanonicalEvent, policy: DedupPolicy) -> tuple:
    return (
        policy.trust_rank(event.source),
        -policy.completeness(event),
        _seen_ts(event.first_seen_at),
        event.source_id,
        event.source,
    )


def _decided_by(best: CanonicalEvent, runner_up: CanonicalEvent, policy: DedupPolicy) -> str:
    if policy.trust_rank(best.source) != policy.trust_rank(runner_up.source):
        return DECIDED_TRUST
    if policy.completeness(best) != policy.completeness(runner_up):
        return DECIDED_COMPLETENESS
    return DECIDED_FIRST_SEEN


def build_group(key: str, members: list[CanonicalEvent], policy: DedupPolicy) -> DuplicateGroup:
    contenders = sorted(_collapse_same_source(members), key=lambda event: _selection_key(event, policy))
    winner = contenders[0]
    decided_by = DECIDED_SINGLE if len(contenders) == 1 else _decided_by(winner, contenders[1], policy)

    representative = winner.evolve(duplicate_of=None)
    others = sorted(
        (member for member in members if member.key != winner.key),
        key=lambda event: (event.source, event.source_id),
    )
    flagged = tuple(member.evolve(duplicate_of=representative.id) for member in others)
    return DuplicateGroup(key=key, representative=representative, members=(representative, *flagged), decided_by=decided_by)


def deduplicate(candidates: Iterable[CanonicalEvent], policy: DedupPolicy) -> DedupResult:
    """Group candidates by dedup key and pick one representative per group.

    Candidates must be unique on (source, source_id). Grouping and the
    representative depend only on group membership and ``policy``, never on
    input order.
    """
    by_key: dict[str, list[CanonicalEvent]] = defaultdict(list)
    for candidate in candidates:
        by_key[dedup_key(candidate)].append(candidate)

    groups: list[DuplicateGroup] = []
    conflicts: list[DuplicateConflict] = []
    for key in sorted(by_key):
        group = build_group(key, by_key[key], policy)
        groups.append(group)
        if group.cross_source:
            conflicts.append(
                DuplicateConflict(
                    key=key,
                    representative_id=group.representative.id,
                    member_ids=tuple(member.id for member in group.members),
                    sources=group.sources,
                    decided_by=group.decided_by,
                )
            )
    return DedupResult(groups=tuple(groups), conflicts=tuple(conflicts))


def promote_orphans(store: EventStore, policy: DedupPolicy) -> list[DuplicateGroup]:
    """Re-elect a representative for every group whose representative was hidden.

    The surviving members are regrouped under the old representative's id
    and written back, so each group keeps exactly one visible record.
    """
    groups = []
    for hidden_id, members in sorted(store.orphaned_duplicates().items()):
        group = build_group(hidden_id, members, policy)
        store.write_group(group)
        groups.append(group)
    return groups
