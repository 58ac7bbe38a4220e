import copy

import pytest

from metro_events.common.errors import ConfigError, GeoFilteredSkip
from metro_events.common.region import Region, ensure_in_region, out_of_region_reason


def test_coordinates_decide_when_present(repo_bundle):
    region = repo_bundle.region
    assert out_of_region_reason(region, lat=35.5951, lon=-82.5515, location="Greenville, SC") is None
    assert out_of_region_reason(region, lat=34.8526, lon=-82.3940, location="Asheville, NC") is not None


def test_location_text_filters_without_coordinates(repo_bundle):
    region = repo_bundle.region
    assert out_of_region_reason(region, lat=None, lon=None, location="Asheville, NC") is None
    assert out_of_region_reason(region, lat=None, lon=None, location="Peace Center, Greenville, SC") is not None
    assert out_of_region_reason(region, lat=None, lon=None, location="The Orange Peel") is None


def test_title_patterns_only_apply_to_ambiguous_locations(repo_bundle):
    region = repo_bundle.region
    assert out_of_region_reason(region, lat=None, lon=None, location=None, title="Comedy Night in Greenville") is not None
    assert out_of_region_reason(region, lat=None, lon=None, location="Asheville, NC", title="Comedy Night in Greenville") is None


def test_ensure_in_region_raises_geo_skip(repo_bundle):
    with pytest.raises(GeoFilteredSkip):
        ensure_in_region(repo_bundle.region, lat=33.749, lon=-84.388, location=None)


def test_invalid_region_pattern_is_config_error(repo_bundle):
    cfg = copy.deepcopy(repo_bundle.pipeline["region"])
    cfg["include_patterns"] = ["["]
    with pytest.raises(ConfigError):
        Region.from_config(cfg)


def test_invalid_region_timezone_is_config_error(repo_bundle):
    cfg = copy.deepcopy(repo_bundle.pipeline["region"])
    cfg["timezone"] = "Nowhere/Special"
    with pytest.raises(ConfigError):
        Region.from_config(cfg)
