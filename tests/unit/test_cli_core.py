import pytest

from metro_events.cli import main, parse_args
from metro_events.common.constants import EXIT_HARD_FAIL


def test_parse_args_defaults():
    args = parse_args(["run"])
    assert args.command == "run"
    assert args.sources == "all"
    assert args.overlay_config_dir is None
    assert args.strict is False
    assert args.allow_unknown is False


def test_parse_args_accepts_overlay_config_dir_and_sources():
    args = parse_args(["run", "--overlay-config-dir", "config/live", "--sources", "grey_eagle"])
    assert args.overlay_config_dir == "config/live"
    assert args.sources == "grey_eagle"


def test_parse_args_rejects_unknown_command():
    with pytest.raises(SystemExit):
        parse_args(["explode"])


def test_main_returns_hard_fail_on_config_error(tmp_path):
    assert main(["rank", "--config-dir", str(tmp_path / "missing")]) == EXIT_HARD_FAIL
