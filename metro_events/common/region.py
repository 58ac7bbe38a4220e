"""Target-region filtering for connector output."""

from __future__ import annotations

import re
from dataclasses import dataclass

from metro_events.common.errors import ConfigError, GeoFilteredSkip
from metro_events.common.time_utils import zone


@dataclass(frozen=True)
class Region:
    code: str
    name: str
    timezone: str
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float
    city: str | None = None
    state: str | None = None
    include_patterns: tuple[re.Pattern, ...] = ()
    exclude_patterns: tuple[re.Pattern, ...] = ()
    title_exclude_patterns: tuple[re.Pattern, ...] = ()

    @classmethod
    def from_config(cls, cfg: dict) -> "Region":
        bbox = cfg["bbox_wgs84"]
        zone(cfg["timezone"])
        return cls(
            code=cfg["code"],
            name=cfg["name"],
            timezone=cfg["timezone"],
            min_lat=float(bbox["min_lat"]),
            max_lat=float(bbox["max_lat"]),
            min_lon=float(bbox["min_lon"]),
            max_lon=float(bbox["max_lon"]),
            city=cfg.get("city"),
            state=cfg.get("state"),
            include_patterns=_compile_all(cfg.get("include_patterns", [])),
            exclude_patterns=_compile_all(cfg.get("exclude_patterns", [])),
            title_exclude_patterns=_compile_all(cfg.get("title_exclude_patterns", [])),
        )

    def contains_point(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


def _compile_all(patterns: list[str]) -> tuple[re.Pattern, ...]:
    compiled = []
    for pattern in patterns or []:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            raise ConfigError(f"Invalid region pattern {pattern!r}: {exc}") from exc
    return tuple(compiled)


def _valid_lat_lon(lat: float | None, lon: float | None) -> bool:
    if lat is None or lon is None:
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def out_of_region_reason(region: Region, *, lat: float | None, lon: float | None, location: str | None, title: str = "") -> str | None:
    """None when the listing belongs to the region, otherwise a short reason.

    Coordinates win when present. Without them the location text decides:
    an explicit in-region mention keeps the listing, an explicit foreign
    mention drops it, and ambiguous text is kept.
    """
    if _valid_lat_lon(lat, lon):
        if region.contains_point(lat, lon):
            return None
        return f"coordinates {lat:.4f},{lon:.4f} outside {region.code}"

    text = location or ""
    if text and any(p.search(text) for p in region.include_patterns):
        return None
    if text:
        for pattern in region.exclude_patterns:
            if pattern.search(text):
                return f"location matches {pattern.pattern!r}"
    if title:
        for pattern in region.title_exclude_patterns:
            if pattern.search(title):
                return f"title matches {pattern.pattern!r}"
    return None


def ensure_in_region(region: Region, *, lat: float | None, lon: float | None, location: str | None, title: str = "") -> None:
    reason = out_of_region_reason(region, lat=lat, lon=lon, location=location, title=title)
    if reason is not None:
        raise GeoFilteredSkip(reason)
