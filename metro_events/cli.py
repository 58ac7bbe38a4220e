"""CLI entrypoint for the metro events pipeline."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from metro_events.common.config_loader import ConfigBundle, cron_secret, load_all_configs, resolve_sources
from metro_events.common.constants import COMMANDS, EXIT_HARD_FAIL, EXIT_SUCCESS
from metro_events.common.errors import PipelineError
from metro_events.common.fs import write_json, write_text
from metro_events.common.ids import generate_run_id
from metro_events.common.logging import build_logger, log_event
from metro_events.common.rate_limit import FixedWindowRateLimiter, SqliteRateLimitStore
from metro_events.common.time_utils import utc_now
from metro_events.pipeline.cache import CacheInvalidator
from metro_events.pipeline.feed import render_calendar
from metro_events.pipeline.rank import OVERALL_TIER, RankPolicy, build_tiers, tier_events
from metro_events.pipeline.reports import reports_dir, tiers_payload
from metro_events.pipeline.run import exit_code_for, run_pipeline
from metro_events.pipeline.store import EventStore


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--sources", default="all")
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--config-dir", default="./config")
    parser.add_argument("--overlay-config-dir", default=None)
    parser.add_argument("--data-dir", default=None)
    parser.add_argument("--database", default=None)
    parser.add_argument("--output", default=None)
    parser.add_argument("--allow-unknown", action="store_true")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARN", "ERROR"])
    parser.add_argument("--strict", action="store_true")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    return parser.parse_args(argv)


def _paths(args: argparse.Namespace, bundle: ConfigBundle) -> tuple[Path, Path]:
    data_dir = Path(args.data_dir or bundle.pipeline["output"]["data_dir"])
    database = Path(args.database or bundle.pipeline["storage"]["database_path"])
    return data_dir, database


def _shared_limiter(bundle: ConfigBundle, database: Path) -> FixedWindowRateLimiter:
    store = SqliteRateLimitStore(str(database))
    return FixedWindowRateLimiter.from_config(bundle.pipeline["api"]["rate_limit"], store=store, clock=time.time)


def _run(args, bundle: ConfigBundle, store: EventStore, data_dir: Path, run_id: str, logger) -> int:
    summary = run_pipeline(
        bundle,
        store=store,
        invalidator=CacheInvalidator(logger, store=store),
        source_cfgs=resolve_sources(bundle, args.sources),
        run_id=run_id,
        data_dir=data_dir,
        logger=logger,
    )
    return exit_code_for(summary, strict=args.strict)


def _rank(args, bundle: ConfigBundle, store: EventStore, data_dir: Path, run_id: str, logger) -> int:
    now = utc_now()
    events = store.visible_events(since=now)
    tiers = build_tiers(events, RankPolicy.from_config(bundle.policy), now)
    output = Path(args.output) if args.output else reports_dir(data_dir) / "top_tiers.json"
    write_json(output, {"generated_at": now.isoformat(timespec="seconds"), "tiers": tiers_payload(tiers, events)})
    log_event(logger, f"wrote tiers to {output}", run_id=run_id, stage="rank", event="RANK_WRITTEN", status="ok", rows_in=len(events), rows_out=len(tiers[OVERALL_TIER]))
    return EXIT_SUCCESS


def _feed(args, bundle: ConfigBundle, store: EventStore, data_dir: Path, run_id: str, logger) -> int:
    now = utc_now()
    events = store.visible_events(since=now)
    tiers = build_tiers(events, RankPolicy.from_config(bundle.policy), now)
    api_cfg = bundle.pipeline["api"]
    body = render_calendar(
        tier_events(tiers[OVERALL_TIER], events),
        calendar_name=api_cfg["calendar_name"],
        domain=api_cfg["feed_domain"],
        generated_at=now,
    )
    output = Path(args.output) if args.output else data_dir / "out" / "top30.ics"
    write_text(output, body)
    log_event(logger, f"wrote calendar to {output}", run_id=run_id, stage="feed", event="FEED_WRITTEN", status="ok", rows_out=len(tiers[OVERALL_TIER]))
    return EXIT_SUCCESS


def _serve(args, bundle: ConfigBundle, store: EventStore, data_dir: Path, run_id: str, logger) -> int:
    import uvicorn

    from metro_events.api.app import create_app

    invalidator = CacheInvalidator(logger, store=store)

    def trigger() -> dict:
        summary = run_pipeline(bundle, store=store, invalidator=invalidator, data_dir=data_dir, logger=logger)
        return summary.to_dict()

    app = create_app(
        bundle,
        store=store,
        invalidator=invalidator,
        run_trigger=trigger,
        secret=cron_secret(),
        limiter=_shared_limiter(bundle, Path(store.path)),
        logger=logger,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower().replace("warn", "warning"))
    return EXIT_SUCCESS


def _sweep_limits(args, bundle: ConfigBundle, store: EventStore, data_dir: Path, run_id: str, logger) -> int:
    limiter = _shared_limiter(bundle, Path(store.path))
    removed = limiter.sweep()
    limiter.store.close()
    log_event(logger, f"swept {removed} rate limit entries", run_id=run_id, stage="sweep-limits", event="RATE_LIMIT_SWEEP", status="ok", rows_out=removed)
    print(json.dumps({"removed": removed}))
    return EXIT_SUCCESS


HANDLERS = {
    "run": _run,
    "rank": _rank,
    "feed": _feed,
    "serve": _serve,
    "sweep-limits": _sweep_limits,
}


def run_command(args: argparse.Namespace) -> int:
    run_id = args.run_id or generate_run_id()
    config_dir = Path(args.config_dir)
    overlay_config_dir = Path(args.overlay_config_dir) if args.overlay_config_dir else None

    bundle = load_all_configs(config_dir, allow_unknown=args.allow_unknown, overlay_config_dir=overlay_config_dir)
    data_dir, database = _paths(args, bundle)
    logger = build_logger(run_id, data_dir=data_dir, level=args.log_level)

    log_event(logger, f"{args.command} start", run_id=run_id, stage=args.command, event="STAGE_START", status="ok")
    with EventStore(database) as store:
        code = HANDLERS[args.command](args, bundle, store, data_dir, run_id, logger)
    log_event(logger, f"{args.command} end", run_id=run_id, stage=args.command, event="STAGE_END", status="ok", error_code=None if code == EXIT_SUCCESS else f"EXIT_{code}")
    return code


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        return run_command(args)
    except PipelineError as exc:
        print(f"{exc.error_code}: {exc}", file=sys.stderr)
        return EXIT_HARD_FAIL
    except Exception as exc:
        print(f"UNEXPECTED_ERROR: {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_HARD_FAIL


if __name__ == "__main__":
    raise SystemExit(main())
