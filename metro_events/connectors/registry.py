"""Resolve configured source kinds to connector classes."""

from __future__ import annotations

import importlib
import logging

from metro_events.common.config_loader import source_api_key
from metro_events.common.errors import ConfigError
from metro_events.common.region import Region
from metro_events.connectors.common import Connector, SourceContext

BUILTIN_CONNECTORS = {
    "ticketmaster_api": "metro_events.connectors.ticketmaster:TicketmasterConnector",
    "cityspark_api": "metro_events.connectors.cityspark:CitySparkConnector",
    "jsonld_page": "metro_events.connectors.jsonld_page:JsonLdPageConnector",
    "eventbrite_hybrid": "metro_events.connectors.eventbrite:EventbriteConnector",
}


def resolve_connector_class(kind: str) -> type:
    target = BUILTIN_CONNECTORS.get(kind, kind)
    module_name, sep, class_name = target.partition(":")
    if not sep or not module_name or not class_name:
        raise ConfigError(f"Connector kind must be built-in or 'module:Class', got {kind!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import connector module {module_name!r}: {exc}") from exc
    try:
        cls = getattr(module, class_name)
    except AttributeError as exc:
        raise ConfigError(f"Module {module_name!r} has no connector {class_name!r}") from exc
    if not callable(getattr(cls, "fetch", None)):
        raise ConfigError(f"{target} does not provide fetch()")
    return cls


def build_connector(
    source_cfg: dict,
    region: Region,
    *,
    environ: dict[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> Connector:
    cls = resolve_connector_class(source_cfg["kind"])
    context = SourceContext(
        name=source_cfg["name"],
        region=region,
        timezone=source_cfg.get("timezone") or region.timezone,
        api_key=source_api_key(source_cfg, environ),
        logger=logger,
    )
    return cls(context, dict(source_cfg.get("options") or {}))
