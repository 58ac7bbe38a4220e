"""Minimal strict schemas for YAML config validation."""

from __future__ import annotations

from metro_events.common.constants import BUILTIN_CONNECTOR_KINDS, COMPLETENESS_FIELDS
from metro_events.common.errors import ConfigError
from metro_events.common.scoring import parse_condition


def _assert_mapping(obj, ctx: str) -> dict:
    if not isinstance(obj, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    return obj


def _assert_required_keys(obj: dict, required: set[str], ctx: str) -> None:
    _assert_mapping(obj, ctx)
    missing = required - set(obj)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing keys in {ctx}: {missing_str}")


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_strict(obj: dict, required: set[str], ctx: str, allow_unknown: bool, optional: set[str] = frozenset()) -> None:
    _assert_required_keys(obj, required, ctx)
    _assert_no_unknown_keys(obj, required | set(optional), ctx, allow_unknown)


def _assert_positive(value, ctx: str) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"{ctx} must be a positive number")


def validate_pipeline_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_strict(cfg, {"region", "run", "http", "storage", "output", "api"}, "pipeline config", allow_unknown)

    region = cfg["region"]
    _assert_strict(
        region,
        {"code", "name", "timezone", "bbox_wgs84"},
        "region",
        allow_unknown,
        optional={"city", "state", "include_patterns", "exclude_patterns", "title_exclude_patterns"},
    )
    _assert_strict(region["bbox_wgs84"], {"min_lat", "max_lat", "min_lon", "max_lon"}, "region.bbox_wgs84", allow_unknown)
    bbox = region["bbox_wgs84"]
    if bbox["min_lat"] >= bbox["max_lat"] or bbox["min_lon"] >= bbox["max_lon"]:
        raise ConfigError("region.bbox_wgs84 min values must be below max values")

    run = cfg["run"]
    _assert_strict(run, {"window_days", "max_workers", "hard_timeout_seconds"}, "run", allow_unknown)
    for key in ("window_days", "max_workers", "hard_timeout_seconds"):
        _assert_positive(run[key], f"run.{key}")

    _assert_strict(
        cfg["http"],
        {"connect_timeout", "read_timeout", "max_attempts", "backoff_initial", "backoff_max", "jitter", "default_rate_per_sec"},
        "http",
        allow_unknown,
    )
    _assert_positive(cfg["http"]["max_attempts"], "http.max_attempts")

    _assert_strict(cfg["storage"], {"database_path"}, "storage", allow_unknown)
    _assert_strict(cfg["output"], {"data_dir", "write_raw_dumps"}, "output", allow_unknown)

    api = cfg["api"]
    _assert_strict(
        api,
        {"max_batch_ids", "calendar_max_age_seconds", "calendar_name", "feed_domain", "similar_limit", "rate_limit"},
        "api",
        allow_unknown,
    )
    _assert_positive(api["max_batch_ids"], "api.max_batch_ids")
    _assert_strict(api["rate_limit"], {"limit", "window_seconds", "sweep_interval_seconds"}, "api.rate_limit", allow_unknown)
    for key in ("limit", "window_seconds", "sweep_interval_seconds"):
        _assert_positive(api["rate_limit"][key], f"api.rate_limit.{key}")

    return cfg


def validate_sources_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_strict(cfg, {"sources"}, "sources config", allow_unknown)
    if not isinstance(cfg["sources"], list) or not cfg["sources"]:
        raise ConfigError("sources.sources must be a non-empty list")

    names: list[str] = []
    for idx, src in enumerate(cfg["sources"]):
        ctx = f"sources[{idx}]"
        _assert_strict(
            src,
            {"name", "kind", "options"},
            ctx,
            allow_unknown,
            optional={"enabled", "rate_per_sec", "api_key_env", "timezone"},
        )
        kind = src["kind"]
        if not isinstance(kind, str) or (kind not in BUILTIN_CONNECTOR_KINDS and ":" not in kind):
            raise ConfigError(f"{ctx}.kind must be a built-in kind or a 'module:Class' path, got {kind!r}")
        _assert_mapping(src["options"], f"{ctx}.options")
        if "rate_per_sec" in src:
            _assert_positive(src["rate_per_sec"], f"{ctx}.rate_per_sec")
        names.append(src["name"])

    dupes = {name for name in names if names.count(name) > 1}
    if dupes:
        raise ConfigError(f"Duplicate source names: {', '.join(sorted(dupes))}")

    return cfg


def validate_policy_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_strict(cfg, {"trust", "completeness", "imminence", "scoring_profile", "tiers"}, "policy config", allow_unknown)

    trust = cfg["trust"]
    _assert_strict(trust, {"ranking", "weights"}, "trust", allow_unknown, optional={"default_weight"})
    if not isinstance(trust["ranking"], list):
        raise ConfigError("trust.ranking must be a list of source names")
    if len(set(trust["ranking"])) != len(trust["ranking"]):
        raise ConfigError("trust.ranking must not repeat a source")
    _assert_mapping(trust["weights"], "trust.weights")

    completeness = cfg["completeness"]
    _assert_strict(completeness, {"weights"}, "completeness", allow_unknown)
    weights = _assert_mapping(completeness["weights"], "completeness.weights")
    _assert_no_unknown_keys(weights, set(COMPLETENESS_FIELDS), "completeness.weights", allow_unknown=False)

    imminence = cfg["imminence"]
    _assert_strict(imminence, {"max_points", "horizon_days"}, "imminence", allow_unknown)
    _assert_positive(imminence["horizon_days"], "imminence.horizon_days")

    profile = cfg["scoring_profile"]
    _assert_strict(profile, {"rules", "clamp"}, "scoring_profile", allow_unknown)
    _assert_required_keys(profile["clamp"], {"min", "max"}, "scoring_profile.clamp")
    if profile["clamp"]["min"] > profile["clamp"]["max"]:
        raise ConfigError("scoring_profile.clamp.min must not exceed max")
    rule_ids: list[str] = []
    for idx, rule in enumerate(profile["rules"] or []):
        _assert_strict(rule, {"id", "when", "add"}, f"scoring_profile.rules[{idx}]", allow_unknown)
        parse_condition(rule["when"])
        rule_ids.append(rule["id"])
    dupes = {rule_id for rule_id in rule_ids if rule_ids.count(rule_id) > 1}
    if dupes:
        raise ConfigError(f"Duplicate scoring rules: {', '.join(sorted(dupes))}")

    tiers = cfg["tiers"]
    _assert_strict(tiers, {"top_n"}, "tiers", allow_unknown, optional={"categories"})
    _assert_positive(tiers["top_n"], "tiers.top_n")
    for name, category in (tiers.get("categories") or {}).items():
        _assert_strict(category, {"tags"}, f"tiers.categories.{name}", allow_unknown, optional={"top_n"})
        if not category["tags"]:
            raise ConfigError(f"tiers.categories.{name}.tags must not be empty")
        if name == "overall":
            raise ConfigError("'overall' is reserved for the unfiltered tier")

    return cfg
