"""
Tests for structured logging and the expansion event log.
"""
import json
import logging

from services_logging import get_recent_events, log_expansion_event, structured_log_line


def test_structured_log_line_is_compact_json():
    line = structured_log_line({"event": "request", "status": 200})
    assert line == '{"event":"request","status":200}'


def test_expansion_events_are_logged_and_appended(tmp_path, caplog):
    log_file = tmp_path / "events.jsonl"
    with caplog.at_level(logging.INFO, logger="constellations"):
        log_expansion_event(1, "Heat", "expanded", added_count=3, latency_ms=12, cache_hit="miss", log_file=log_file)
        log_expansion_event(2, "Ronin", "cache_hit", cache_hit="exact", log_file=log_file)

    events = get_recent_events(log_file=log_file)
    assert [e["source_id"] for e in events] == [1, 2]
    assert events[0]["added_count"] == 3
    assert events[1]["cache_hit"] == "exact"
    assert json.loads(caplog.records[0].message)["outcome"] == "expanded"


def test_missing_event_file_is_empty(tmp_path):
    assert get_recent_events(log_file=tmp_path / "missing.jsonl") == []
