from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from usage_engine.ingest.records import CanonicalSpan
from usage_engine.storage.database import session_scope
from usage_engine.storage.spans import get_trace, list_spans, upsert_span

START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _span(**overrides) -> CanonicalSpan:
    span = CanonicalSpan(
        customer_id="acme",
        team_id=None,
        user_id=None,
        trace_id="t1",
        span_id="s1",
        parent_span_id=None,
        span_name="tool call",
        span_kind="INTERNAL",
        start_time=START,
        end_time=START + timedelta(milliseconds=100),
        duration_ms=100,
        status_code="UNSET",
        status_message=None,
        vendor="arcade",
        display_name="Arcade Dev",
        vendor_category="tool-server",
        is_llm=False,
        service_name="arcade-worker",
        span_attributes={"a": "1"},
        resource_attributes={"service.name": "arcade-worker"},
    )
    return replace(span, **overrides)


def _write(span: CanonicalSpan):
    with session_scope() as session:
        return upsert_span(session, span, None)


def test_first_write_inserts():
    write = _write(_span(status_code="ERROR"))

    assert write.inserted is True
    assert write.became_error is True


def test_later_end_time_wins_and_attributes_merge():
    _write(_span())
    write = _write(
        _span(
            end_time=START + timedelta(milliseconds=400),
            duration_ms=400,
            status_code="ERROR",
            status_message="boom",
            span_attributes={"b": "2"},
            team_id="red",
        )
    )

    assert write.inserted is False
    assert write.became_error is True
    (span,) = get_trace("acme", "t1")
    assert span["duration_ms"] == 400
    assert span["status_code"] == "ERROR"
    assert span["status_message"] == "boom"
    assert span["span_attributes"] == {"a": "1", "b": "2"}
    assert span["team_id"] == "red"


def test_stale_report_does_not_overwrite_timing():
    _write(_span(end_time=START + timedelta(milliseconds=400), duration_ms=400, status_code="OK"))
    write = _write(_span(span_attributes={"late": "yes"}, status_code="ERROR"))

    assert write.became_error is False
    (span,) = get_trace("acme", "t1")
    assert span["duration_ms"] == 400
    assert span["status_code"] == "OK"
    assert span["span_attributes"] == {"a": "1", "late": "yes"}


def test_later_ok_report_clears_error():
    _write(_span(status_code="ERROR"))
    cleared = _write(_span(end_time=START + timedelta(milliseconds=200), status_code="OK"))
    again = _write(_span(end_time=START + timedelta(milliseconds=300), status_code="ERROR"))

    assert cleared.became_error is False
    assert cleared.cleared_error is True
    assert again.became_error is True
    assert again.cleared_error is False


def test_log_report_does_not_overwrite_open_span():
    _write(_span(span_name="POST /charge", span_kind="SERVER", end_time=None, duration_ms=None, status_code="OK"))
    write = _write(
        _span(
            span_name="card declined",
            start_time=START + timedelta(seconds=5),
            end_time=None,
            duration_ms=None,
            status_code="ERROR",
            signal_type="log",
            span_attributes={"log.severity": "ERROR"},
        )
    )

    assert write.became_error is False
    (span,) = get_trace("acme", "t1")
    assert span["span_name"] == "POST /charge"
    assert span["span_kind"] == "SERVER"
    assert span["status_code"] == "OK"
    assert span["start_time"] == START.isoformat()
    assert span["signal_type"] == "trace"
    assert span["span_attributes"] == {"a": "1", "log.severity": "ERROR"}


def test_real_span_replaces_log_span():
    _write(_span(span_name="charging card", end_time=None, duration_ms=None, signal_type="log"))
    _write(_span(span_name="POST /charge"))

    (span,) = get_trace("acme", "t1")
    assert span["span_name"] == "POST /charge"
    assert span["signal_type"] == "trace"


def test_existing_team_is_not_replaced():
    _write(_span(team_id="red"))
    _write(_span(team_id="blue"))

    assert get_trace("acme", "t1")[0]["team_id"] == "red"


def test_list_spans_filters_and_pages():
    for i in range(5):
        _write(_span(span_id=f"s{i}", start_time=START + timedelta(minutes=i), user_id="u1" if i % 2 else None))
    _write(_span(customer_id="globex", span_id="other"))

    newest_first = list_spans("acme", limit=2)
    assert [s["span_id"] for s in newest_first] == ["s4", "s3"]
    assert [s["span_id"] for s in list_spans("acme", limit=2, offset=2)] == ["s2", "s1"]
    assert [s["span_id"] for s in list_spans("acme", user_id="u1")] == ["s3", "s1"]
    window = list_spans("acme", start=START + timedelta(minutes=1), end=START + timedelta(minutes=3))
    assert [s["span_id"] for s in window] == ["s2", "s1"]
    assert all(s["span_id"] != "other" for s in list_spans("acme", limit=1000))
