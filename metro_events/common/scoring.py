"""Config-driven scoring utilities."""

from __future__ import annotations

import re

from metro_events.common.errors import ConfigError
from metro_events.common.models import CanonicalEvent

_CONDITION_RE = re.compile(r"^(?P<name>[a-z_]+)\((?P<arg>[^()]*)\)$")
HAS_FIELDS = {
    "image": "image_url",
    "description": "description",
    "price": "price",
    "venue": "venue",
    "end": "end_date",
    "url": "url",
    "organizer": "organizer",
}
CONDITION_NAMES = ("has", "free", "source", "tag")


def clamp(value: float, *, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def parse_condition(condition: str) -> tuple[str, str]:
    match = _CONDITION_RE.match(condition.strip())
    if match is None:
        raise ConfigError(f"Malformed scoring condition: {condition!r}")
    name, arg = match.group("name"), match.group("arg").strip()
    if name not in CONDITION_NAMES:
        raise ConfigError(f"Unknown scoring condition: {condition!r}")
    if name == "has" and arg not in HAS_FIELDS:
        raise ConfigError(f"Unknown field in scoring condition: {condition!r}")
    if name == "free" and arg:
        raise ConfigError(f"free() takes no argument: {condition!r}")
    if name in ("source", "tag") and not arg:
        raise ConfigError(f"{name}() needs an argument: {condition!r}")
    return name, arg


def evaluate_condition(condition: str, *, event: CanonicalEvent) -> bool:
    name, arg = parse_condition(condition)
    if name == "has":
        return getattr(event, HAS_FIELDS[arg]) not in (None, "")
    if name == "free":
        return event.price == 0
    if name == "source":
        return event.source == arg
    return arg.casefold() in {tag.casefold() for tag in event.tags}


def apply_scoring_profile(profile: dict, *, event: CanonicalEvent, base_score: float = 0.0) -> tuple[float, dict]:
    raw_score = base_score
    applied_rules: list[str] = []

    for rule in profile.get("rules", []):
        if evaluate_condition(rule.get("when", ""), event=event):
            raw_score += float(rule.get("add", 0))
            applied_rules.append(rule.get("id", "unnamed_rule"))

    clamp_cfg = profile.get("clamp", {"min": 0, "max": 100})
    clamped_score = clamp(raw_score, minimum=float(clamp_cfg["min"]), maximum=float(clamp_cfg["max"]))

    explanation = {
        "applied_rules": applied_rules,
        "raw_score": round(raw_score, 4),
        "clamped_score": round(clamped_score, 4),
    }
    return round(clamped_score, 4), explanation
