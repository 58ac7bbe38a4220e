"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from metro_events.common.constants import CRON_SECRET_ENV
from metro_events.common.errors import ConfigError
from metro_events.common.fs import read_yaml
from metro_events.common.region import Region
from metro_events.common.schema import (
    validate_pipeline_config,
    validate_policy_config,
    validate_sources_config,
)

CONFIG_FILES = ("pipeline.yml", "sources.yml", "policy.yml")


@dataclass(frozen=True)
class ConfigBundle:
    pipeline: dict
    sources: list[dict]
    policy: dict

    @property
    def region(self) -> Region:
        return Region.from_config(self.pipeline["region"])

    def enabled_sources(self) -> list[dict]:
        return [src for src in self.sources if src.get("enabled", True)]

    def source(self, name: str) -> dict:
        for src in self.sources:
            if src["name"] == name:
                return src
        raise ConfigError(f"Unknown source: {name}")


def _deep_merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            if key in merged:
                merged[key] = _deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged
    return overlay


def _load_yaml_with_overlay(path: Path, overlay_path: Path | None) -> dict:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    base = read_yaml(path) or {}
    if overlay_path is None or not overlay_path.exists():
        return base
    overlay = read_yaml(overlay_path) or {}
    return _deep_merge(base, overlay)


def load_all_configs(
    config_dir: Path,
    *,
    allow_unknown: bool = False,
    overlay_config_dir: Path | None = None,
) -> ConfigBundle:
    loaded = {}
    for filename in CONFIG_FILES:
        overlay_path = None
        if overlay_config_dir is not None:
            overlay_path = overlay_config_dir / filename
        loaded[filename] = _load_yaml_with_overlay(config_dir / filename, overlay_path)

    pipeline = validate_pipeline_config(loaded["pipeline.yml"], allow_unknown=allow_unknown)
    sources = validate_sources_config(loaded["sources.yml"], allow_unknown=allow_unknown)
    policy = validate_policy_config(loaded["policy.yml"], allow_unknown=allow_unknown)
    Region.from_config(pipeline["region"])
    return ConfigBundle(pipeline=pipeline, sources=sources["sources"], policy=policy)


def resolve_sources(bundle: ConfigBundle, target: str) -> list[dict]:
    if target == "all":
        return bundle.enabled_sources()
    return [bundle.source(name) for name in target.split(",")]


def cron_secret(environ: dict[str, str] | None = None) -> str | None:
    env = os.environ if environ is None else environ
    return env.get(CRON_SECRET_ENV) or None


def source_api_key(source_cfg: dict, environ: dict[str, str] | None = None) -> str | None:
    env_name = source_cfg.get("api_key_env")
    if not env_name:
        return None
    env = os.environ if environ is None else environ
    return env.get(env_name) or None
