"""Score visible upcoming events and cut them into tiers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from metro_events.common.constants import DEFAULT_TOP_N
from metro_events.common.models import CanonicalEvent, ScoreRecord
from metro_events.common.scoring import apply_scoring_profile

OVERALL_TIER = "overall"


@dataclass(frozen=True)
class TierSpec:
    name: str
    tags: frozenset[str]
    top_n: int


@dataclass(frozen=True)
class RankPolicy:
    trust_weights: dict[str, float] = field(default_factory=dict)
    default_weight: float = 0.0
    imminence_max_points: float = 40.0
    imminence_horizon_days: float = 30.0
    profile: dict = field(default_factory=dict)
    top_n: int = DEFAULT_TOP_N
    categories: tuple[TierSpec, ...] = ()

    @classmethod
    def from_config(cls, policy_cfg: dict) -> "RankPolicy":
        tiers = policy_cfg["tiers"]
        top_n = int(tiers.get("top_n", DEFAULT_TOP_N))
        categories = tuple(
            TierSpec(
                name=name,
                tags=frozenset(tag.casefold() for tag in spec["tags"]),
                top_n=int(spec.get("top_n", top_n)),
            )
            for name, spec in sorted((tiers.get("categories") or {}).items())
        )
        return cls(
            trust_weights={k: float(v) for k, v in policy_cfg["trust"]["weights"].items()},
            default_weight=float(policy_cfg["trust"].get("default_weight", 0)),
            imminence_max_points=float(policy_cfg["imminence"]["max_points"]),
            imminence_horizon_days=float(policy_cfg["imminence"]["horizon_days"]),
            profile=policy_cfg["scoring_profile"],
            top_n=top_n,
            categories=categories,
        )

    def trust_weight(self, source: str) -> float:
        return self.trust_weights.get(source, self.default_weight)

    def tier(self, name: str) -> TierSpec | None:
        for spec in self.categories:
            if spec.name == name:
                return spec
        return None


def imminence_points(start: datetime, now: datetime, *, max_points: float, horizon_days: float) -> float:
    """Linear decay from ``max_points`` at ``now`` to zero at the horizon."""
    days_out = (start - now).total_seconds() / 86400
    if days_out < 0 or days_out >= horizon_days:
        return 0.0
    return round(max_points * (1 - days_out / horizon_days), 4)


def is_rankable(event: CanonicalEvent, now: datetime) -> bool:
    return event.visible and event.start_date >= now


def score_event(event: CanonicalEvent, policy: RankPolicy, now: datetime) -> tuple[float, dict]:
    imminence = imminence_points(
        event.start_date,
        now,
        max_points=policy.imminence_max_points,
        horizon_days=policy.imminence_horizon_days,
    )
    trust = policy.trust_weight(event.source)
    score, explanation = apply_scoring_profile(policy.profile, event=event, base_score=imminence + trust)
    explanation["imminence_points"] = imminence
    explanation["trust_weight"] = trust
    return score, explanation


def rank_events(
    events: Iterable[CanonicalEvent],
    policy: RankPolicy,
    now: datetime,
    *,
    tier: str = OVERALL_TIER,
    top_n: int | None = None,
    tags: frozenset[str] | None = None,
) -> list[ScoreRecord]:
    scored = []
    for event in events:
        if not is_rankable(event, now):
            continue
        if tags is not None and not tags.intersection(tag.casefold() for tag in event.tags):
            continue
        score, explanation = score_event(event, policy, now)
        scored.append((event.id, score, explanation))

    # Highest score first; ties go to the smaller id.
    ordered = sorted(scored, key=lambda item: (-item[1], item[0]))
    limit = policy.top_n if top_n is None else top_n
    return [
        ScoreRecord(event_id=event_id, score=score, tier=tier, rank=idx, explanation=explanation)
        for idx, (event_id, score, explanation) in enumerate(ordered[:limit], start=1)
    ]


def build_tiers(events: Iterable[CanonicalEvent], policy: RankPolicy, now: datetime) -> dict[str, list[ScoreRecord]]:
    pool = list(events)
    tiers = {OVERALL_TIER: rank_events(pool, policy, now)}
    for spec in policy.categories:
        tiers[spec.name] = rank_events(pool, policy, now, tier=spec.name, top_n=spec.top_n, tags=spec.tags)
    return tiers


def tier_events(records: list[ScoreRecord], events: Iterable[CanonicalEvent]) -> list[CanonicalEvent]:
    by_id = {event.id: event for event in events}
    return [by_id[record.event_id] for record in records if record.event_id in by_id]
