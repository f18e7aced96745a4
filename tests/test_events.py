from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from usage_engine.storage.database import session_scope
from usage_engine.storage.models import EngineEvent
from usage_engine.telemetry import events

EXPECTED_EVENT_COUNT = 2


def _add_event(ts: datetime, level: str = "INFO", kind: str = "test_event", customer_id: str | None = None) -> None:
    with session_scope() as session:
        session.add(
            EngineEvent(
                ts=ts,
                level=level,
                kind=kind,
                customer_id=customer_id,
            )
        )


def test_record_event_prunes_events_older_than_yesterday():
    threshold = datetime.now(timezone.utc)

    _add_event(threshold - timedelta(days=3))
    _add_event(threshold - timedelta(days=1))

    events.record_event("budget_denied", "INFO", message="kept")

    with session_scope() as session:
        rows = session.scalars(select(EngineEvent).order_by(EngineEvent.ts)).all()

    assert len(rows) == EXPECTED_EVENT_COUNT
    first_ts = rows[0].ts
    assert first_ts is not None
    if first_ts.tzinfo is None:
        first_ts = first_ts.replace(tzinfo=timezone.utc)
    assert first_ts >= events._current_retention_cutoff()


def test_list_recent_events_returns_only_retained_records():
    now = datetime.now(timezone.utc)

    _add_event(now - timedelta(days=4))
    _add_event(now - timedelta(days=2))
    _add_event(now - timedelta(hours=6))

    # Trigger pruning and retrieval.
    data = events.list_recent_events(limit=10)

    assert len(data) == 1
    for item in data:
        timestamp = datetime.fromisoformat(item["timestamp"])
        assert timestamp >= events._current_retention_cutoff()


def test_list_recent_events_filters_by_customer_and_kind():
    events.record_event("budget_denied", "WARNING", customer_id="acme", key_hash="k1", error_code="disabled")
    events.record_event("budget_denied", "WARNING", customer_id="globex")
    events.record_event("spend_reset", "INFO", customer_id="acme")

    acme = events.list_recent_events(customer_id="acme")
    assert {item["kind"] for item in acme} == {"budget_denied", "spend_reset"}

    denied = events.list_recent_events(customer_id="acme", kind="budget_denied")
    assert len(denied) == 1
    assert denied[0]["key_hash"] == "k1"
    assert denied[0]["error_code"] == "disabled"


def test_record_event_stores_meta_as_json():
    events.record_event("ingest_rejected", "warning", meta={"rejected": [{"index": 1}]})

    (item,) = events.list_recent_events(kind="ingest_rejected")
    assert item["level"] == "WARNING"
    assert item["meta"] == {"rejected": [{"index": 1}]}


def test_record_event_is_noop_when_disabled(monkeypatch):
    monkeypatch.setattr(events, "_EVENTS_ENABLED", False)

    events.record_event("spend_reset", "INFO")

    with session_scope() as session:
        assert session.scalars(select(EngineEvent)).all() == []
    assert events.list_recent_events() == []
