from datetime import datetime, timedelta, timezone

from metro_events.pipeline.feed import escape_text, fold_line, render_calendar

GENERATED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _render(events, generated_at=GENERATED) -> str:
    return render_calendar(events, calendar_name="Asheville Top 30", domain="events.test", generated_at=generated_at)


def _unfold(body: str) -> list[str]:
    return body.replace("\r\n ", "").split("\r\n")


def test_calendar_uses_crlf_and_wraps_events(make_event):
    body = _render([make_event("orange_peel_tm", "1")])

    assert body.startswith("BEGIN:VCALENDAR\r\n")
    assert body.endswith("END:VCALENDAR\r\n")
    assert "\n" not in body.replace("\r\n", "")
    assert body.count("BEGIN:VEVENT") == 1


def test_event_lines_use_utc_and_default_duration(make_event):
    event = make_event("orange_peel_tm", "1", venue="The Orange Peel", url="https://tickets.test/1", price=25.0)
    lines = _unfold(_render([event]))

    assert f"UID:{event.id}@events.test" in lines
    assert "DTSTART:20260306T010000Z" in lines
    assert "DTEND:20260306T030000Z" in lines
    assert "DTSTAMP:20260301T120000Z" in lines
    assert "LOCATION:The Orange Peel" in lines
    assert "URL:https://tickets.test/1" in lines
    description = next(line for line in lines if line.startswith("DESCRIPTION:"))
    assert "Price: $25" in description
    assert "https://tickets.test/1" in description


def test_explicit_end_is_kept(make_event):
    event = make_event(end_date=datetime(2026, 3, 6, 4, 30, tzinfo=timezone.utc))
    assert "DTEND:20260306T043000Z" in _unfold(_render([event]))


def test_text_values_are_escaped():
    assert escape_text("a,b;c\\d\ne") == r"a\,b\;c\\d\ne"


def test_long_lines_fold_at_75_octets_without_splitting_characters():
    line = "DESCRIPTION:" + "é" * 100
    folded = fold_line(line)

    parts = folded.split("\r\n")
    assert all(len(part.encode("utf-8")) <= 75 for part in parts)
    assert all(part.startswith(" ") for part in parts[1:])
    assert folded.replace("\r\n ", "") == line


def test_feed_identifiers_are_stable_across_runs(make_event):
    events = [make_event("orange_peel_tm", "1"), make_event("avl_today", "2", title="Open Mic")]

    first = _render(events, GENERATED)
    second = _render(events, GENERATED + timedelta(hours=5))

    def stable(body):
        return [line for line in _unfold(body) if not line.startswith("X-GENERATED-AT")]

    assert stable(first) == stable(second)
    assert first != second


def test_empty_calendar_is_valid():
    lines = _unfold(_render([]))
    assert lines[0] == "BEGIN:VCALENDAR"
    assert "VERSION:2.0" in lines
    assert "METHOD:PUBLISH" in lines
    assert lines[-2] == "END:VCALENDAR"
