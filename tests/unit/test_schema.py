import copy

import pytest
import yaml

from metro_events.common.errors import ConfigError
from metro_events.common.schema import validate_pipeline_config, validate_policy_config, validate_sources_config


def _load(repo_config_dir, name):
    with (repo_config_dir / name).open(encoding="utf-8") as f:
        return yaml.safe_load(f)


def test_repo_configs_validate(repo_config_dir):
    validate_pipeline_config(_load(repo_config_dir, "pipeline.yml"))
    validate_sources_config(_load(repo_config_dir, "sources.yml"))
    validate_policy_config(_load(repo_config_dir, "policy.yml"))


def test_pipeline_missing_section_fails(repo_config_dir):
    cfg = _load(repo_config_dir, "pipeline.yml")
    del cfg["api"]
    with pytest.raises(ConfigError):
        validate_pipeline_config(cfg)


def test_pipeline_inverted_bbox_fails(repo_config_dir):
    cfg = _load(repo_config_dir, "pipeline.yml")
    cfg["region"]["bbox_wgs84"]["min_lat"] = 40
    with pytest.raises(ConfigError):
        validate_pipeline_config(cfg)


def test_pipeline_non_positive_timeout_fails(repo_config_dir):
    cfg = _load(repo_config_dir, "pipeline.yml")
    cfg["run"]["hard_timeout_seconds"] = 0
    with pytest.raises(ConfigError):
        validate_pipeline_config(cfg)


def test_sources_reject_unknown_kind_and_duplicates(repo_config_dir):
    cfg = _load(repo_config_dir, "sources.yml")
    bad_kind = copy.deepcopy(cfg)
    bad_kind["sources"][0]["kind"] = "carrier_pigeon"
    with pytest.raises(ConfigError):
        validate_sources_config(bad_kind)

    dupes = copy.deepcopy(cfg)
    dupes["sources"].append(copy.deepcopy(dupes["sources"][0]))
    with pytest.raises(ConfigError):
        validate_sources_config(dupes)


def test_sources_accept_dotted_connector_paths(repo_config_dir):
    cfg = _load(repo_config_dir, "sources.yml")
    cfg["sources"][0]["kind"] = "my_plugins.venue:VenueConnector"
    validate_sources_config(cfg)


def test_policy_rejects_bad_rules_and_weights(repo_config_dir):
    cfg = _load(repo_config_dir, "policy.yml")

    bad_rule = copy.deepcopy(cfg)
    bad_rule["scoring_profile"]["rules"][0]["when"] = "has(sparkle)"
    with pytest.raises(ConfigError):
        validate_policy_config(bad_rule)

    bad_weight = copy.deepcopy(cfg)
    bad_weight["completeness"]["weights"]["mood"] = 1
    with pytest.raises(ConfigError):
        validate_policy_config(bad_weight, allow_unknown=True)

    reserved = copy.deepcopy(cfg)
    reserved["tiers"]["categories"]["overall"] = {"tags": ["x"]}
    with pytest.raises(ConfigError):
        validate_policy_config(reserved)
