"""Audit event recording for ingestion and key governance outcomes."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from usage_engine.logging import get_request_id
from usage_engine.storage.database import as_utc, session_scope
from usage_engine.storage.models import EngineEvent

logger = logging.getLogger("usage_engine.events")

_EVENTS_ENABLED = os.getenv("EVENTS_ENABLED", "true").lower() in {"1", "true", "yes"}


_RETENTION_DAYS = 2  # keep today + yesterday


def _current_retention_cutoff() -> datetime:
    """Return the UTC timestamp cutoff for events to retain."""
    now_utc = datetime.now(timezone.utc)
    start_of_today = datetime(now_utc.year, now_utc.month, now_utc.day, tzinfo=timezone.utc)
    return start_of_today - timedelta(days=_RETENTION_DAYS - 1)


def _prune_old_events(session) -> None:
    """Remove events older than the retention window."""
    cutoff = _current_retention_cutoff()
    session.execute(
        delete(EngineEvent).where(EngineEvent.ts < cutoff)
    )


def record_event(
    kind: str,
    level: str,
    *,
    message: str | None = None,
    request_id: str | None = None,
    meta: Dict[str, Any] | None = None,
    **fields: Any,
) -> None:
    """Persist a high-value event for later inspection.

    Failures are logged and swallowed: an audit write must never turn a
    successful ingest or budget decision into an error.
    """
    if not _EVENTS_ENABLED:
        return

    event = EngineEvent(
        ts=datetime.now(timezone.utc),
        level=level.upper(),
        kind=kind,
        request_id=request_id or get_request_id(),
        message=message[:512] if message else None,
        customer_id=fields.get("customer_id"),
        key_hash=fields.get("key_hash"),
        vendor=fields.get("vendor"),
        model=fields.get("model"),
        error_code=fields.get("error_code"),
        meta=json.dumps(meta, ensure_ascii=True, default=str) if meta else None,
    )

    try:
        with session_scope() as session:
            session.add(event)
            _prune_old_events(session)
    except Exception:
        logger.exception(
            "Failed to record event", extra={"event": "event_persist_error", "kind": kind}
        )


def list_recent_events(
    limit: int = 50,
    *,
    customer_id: str | None = None,
    kind: str | None = None,
) -> List[Dict[str, Any]]:
    """Return recent events ordered newest first."""
    if not _EVENTS_ENABLED:
        return []

    cutoff = _current_retention_cutoff()

    with session_scope() as session:
        _prune_old_events(session)

        stmt = select(EngineEvent).where(EngineEvent.ts >= cutoff)
        if customer_id is not None:
            stmt = stmt.where(EngineEvent.customer_id == customer_id)
        if kind is not None:
            stmt = stmt.where(EngineEvent.kind == kind)
        stmt = stmt.order_by(EngineEvent.ts.desc()).limit(limit)
        rows = session.scalars(stmt).all()

    events: List[Dict[str, Any]] = []
    for row in rows:
        meta_value: Optional[Dict[str, Any] | str | None]
        if row.meta:
            try:
                meta_value = json.loads(row.meta)
            except json.JSONDecodeError:
                meta_value = row.meta
        else:
            meta_value = None

        timestamp = as_utc(row.ts)
        events.append(
            {
                "id": row.id,
                "timestamp": timestamp.isoformat() if timestamp else None,
                "level": row.level,
                "kind": row.kind,
                "request_id": row.request_id,
                "customer_id": row.customer_id,
                "key_hash": row.key_hash,
                "vendor": row.vendor,
                "model": row.model,
                "error_code": row.error_code,
                "message": row.message,
                "meta": meta_value,
            }
        )
    return events


__all__ = ["list_recent_events", "record_event"]
