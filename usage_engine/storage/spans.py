"""Span, metric and log persistence with idempotent upserts."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from usage_engine.ingest.records import CanonicalLog, CanonicalMetric, CanonicalSpan

from .database import as_utc, session_scope
from .models import TelemetryLog, TelemetryMetric, TelemetrySpan, ToolProfile
from .upsert import insert_ignore

logger = logging.getLogger("usage_engine.storage.spans")

SPAN_IDENTITY = ("customer_id", "trace_id", "span_id")
MAX_PAGE_SIZE = 1000


@dataclass(frozen=True)
class SpanWrite:
    """Outcome of one span upsert, consumed by the tool profile counters."""

    span_row_id: int
    inserted: bool
    # Status transitions into and out of ERROR caused by this write.
    became_error: bool
    cleared_error: bool = False


def _isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _fingerprint(*parts: Any) -> str:
    payload = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def metric_fingerprint(metric: CanonicalMetric) -> str:
    return _fingerprint(
        metric.metric_name,
        metric.metric_type,
        metric.resource_attributes,
        metric.attributes,
        _isoformat(metric.start_time),
        _isoformat(metric.time),
    )


def log_fingerprint(log: CanonicalLog) -> str:
    return _fingerprint(
        log.resource_attributes,
        log.log_attributes,
        log.trace_id,
        log.span_id,
        log.severity,
        log.body,
        _isoformat(log.timestamp),
    )


def _overwrites_timing(existing_end: datetime | None, incoming_end: datetime | None) -> bool:
    if existing_end is None:
        return True
    return incoming_end is not None and incoming_end >= existing_end


def upsert_span(session: Session, span: CanonicalSpan, tool_profile_id: int | None) -> SpanWrite:
    """Insert a span or merge it into the stored row for the same identity.

    Timing and status follow the later report: they are overwritten when the
    stored span is still open or the incoming ``end_time`` is not earlier.
    Attribute maps are always merged key by key. A span synthesized from a
    log record never overwrites the timing, name or status of a real span.
    """
    values = {
        "customer_id": span.customer_id,
        "team_id": span.team_id,
        "user_id": span.user_id,
        "tool_profile_id": tool_profile_id,
        "trace_id": span.trace_id,
        "span_id": span.span_id,
        "parent_span_id": span.parent_span_id,
        "span_name": span.span_name,
        "span_kind": span.span_kind,
        "start_time": span.start_time,
        "end_time": span.end_time,
        "duration_ms": span.duration_ms,
        "status_code": span.status_code,
        "status_message": span.status_message,
        "vendor": span.vendor,
        "service_name": span.service_name,
        "span_attributes": span.span_attributes,
        "resource_attributes": span.resource_attributes,
        "signal_type": span.signal_type,
    }
    inserted = insert_ignore(session, TelemetrySpan, values, SPAN_IDENTITY)

    row = session.scalar(
        select(TelemetrySpan)
        .where(TelemetrySpan.customer_id == span.customer_id)
        .where(TelemetrySpan.trace_id == span.trace_id)
        .where(TelemetrySpan.span_id == span.span_id)
        .with_for_update()
    )
    if row is None:  # pragma: no cover - the insert above guarantees a row
        raise RuntimeError("span row vanished during upsert")
    if inserted:
        return SpanWrite(span_row_id=row.id, inserted=True, became_error=span.status_code == "ERROR")

    was_error = row.status_code == "ERROR"
    row.span_attributes = {**(row.span_attributes or {}), **span.span_attributes}
    row.resource_attributes = {**(row.resource_attributes or {}), **span.resource_attributes}
    if row.team_id is None and span.team_id is not None:
        row.team_id = span.team_id
    if row.user_id is None and span.user_id is not None:
        row.user_id = span.user_id
    if row.tool_profile_id is None:
        row.tool_profile_id = tool_profile_id

    from_log_only = span.signal_type == "log" and row.signal_type != "log"
    if not from_log_only and _overwrites_timing(as_utc(row.end_time), span.end_time):
        row.start_time = span.start_time
        row.end_time = span.end_time
        row.duration_ms = span.duration_ms
        row.status_code = span.status_code
        row.status_message = span.status_message
        row.span_name = span.span_name
        row.span_kind = span.span_kind
        row.signal_type = span.signal_type
        if span.parent_span_id:
            row.parent_span_id = span.parent_span_id

    session.flush()
    is_error = row.status_code == "ERROR"
    return SpanWrite(
        span_row_id=row.id,
        inserted=False,
        became_error=not was_error and is_error,
        cleared_error=was_error and not is_error,
    )


def upsert_metric(session: Session, metric: CanonicalMetric, tool_profile_id: int | None) -> bool:
    """Store one metric data point; a repeated data point is a no-op."""
    values = {
        "customer_id": metric.customer_id,
        "team_id": metric.team_id,
        "user_id": metric.user_id,
        "tool_profile_id": tool_profile_id,
        "vendor": metric.vendor,
        "service_name": metric.service_name,
        "metric_name": metric.metric_name,
        "metric_type": metric.metric_type,
        "unit": metric.unit,
        "description": metric.description,
        "attributes": metric.attributes,
        "value_double": metric.value_double,
        "value_int": metric.value_int,
        "count": metric.count,
        "sum": metric.sum,
        "min": metric.min,
        "max": metric.max,
        "bucket_counts": metric.bucket_counts,
        "explicit_bounds": metric.explicit_bounds,
        "quantile_values": metric.quantile_values,
        "start_time": metric.start_time,
        "time": metric.time,
        "fingerprint": metric_fingerprint(metric),
    }
    return insert_ignore(session, TelemetryMetric, values, ("customer_id", "fingerprint"))


def insert_log(session: Session, log: CanonicalLog, tool_profile_id: int | None) -> bool:
    values = {
        "customer_id": log.customer_id,
        "team_id": log.team_id,
        "user_id": log.user_id,
        "tool_profile_id": tool_profile_id,
        "vendor": log.vendor,
        "service_name": log.service_name,
        "trace_id": log.trace_id,
        "span_id": log.span_id,
        "severity": log.severity,
        "body": log.body,
        "log_attributes": log.log_attributes,
        "resource_attributes": log.resource_attributes,
        "timestamp": log.timestamp,
        "fingerprint": log_fingerprint(log),
    }
    return insert_ignore(session, TelemetryLog, values, ("customer_id", "fingerprint"))


def span_to_dict(row: TelemetrySpan) -> Dict[str, Any]:
    return {
        "id": row.id,
        "trace_id": row.trace_id,
        "span_id": row.span_id,
        "parent_span_id": row.parent_span_id,
        "span_name": row.span_name,
        "span_kind": row.span_kind,
        "start_time": _isoformat(row.start_time),
        "end_time": _isoformat(row.end_time),
        "duration_ms": row.duration_ms,
        "status_code": row.status_code,
        "status_message": row.status_message,
        "vendor": row.vendor,
        "service_name": row.service_name,
        "team_id": row.team_id,
        "user_id": row.user_id,
        "signal_type": row.signal_type,
        "span_attributes": row.span_attributes or {},
        "resource_attributes": row.resource_attributes or {},
    }


def list_spans(
    customer_id: str,
    *,
    vendor: str | None = None,
    trace_id: str | None = None,
    team_id: str | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """Return a page of the tenant's spans, newest first."""
    stmt = select(TelemetrySpan).where(TelemetrySpan.customer_id == customer_id)
    if vendor is not None:
        stmt = stmt.where(TelemetrySpan.vendor == vendor)
    if trace_id is not None:
        stmt = stmt.where(TelemetrySpan.trace_id == trace_id)
    if team_id is not None:
        stmt = stmt.where(TelemetrySpan.team_id == team_id)
    if user_id is not None:
        stmt = stmt.where(TelemetrySpan.user_id == user_id)
    if start is not None:
        stmt = stmt.where(TelemetrySpan.start_time >= as_utc(start))
    if end is not None:
        stmt = stmt.where(TelemetrySpan.start_time < as_utc(end))
    stmt = (
        stmt.order_by(TelemetrySpan.start_time.desc(), TelemetrySpan.id.desc())
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
        .offset(max(0, offset))
    )
    with session_scope() as session:
        rows = session.scalars(stmt).all()
        return [span_to_dict(row) for row in rows]


def get_trace(customer_id: str, trace_id: str) -> List[Dict[str, Any]]:
    """Return every span of one trace for the tenant, in start order."""
    with session_scope() as session:
        rows = session.scalars(
            select(TelemetrySpan)
            .where(TelemetrySpan.customer_id == customer_id)
            .where(TelemetrySpan.trace_id == trace_id)
            .order_by(TelemetrySpan.start_time.asc(), TelemetrySpan.id.asc())
        ).all()
        return [span_to_dict(row) for row in rows]


def list_metric_summaries(customer_id: str, vendor: str) -> List[Dict[str, Any]]:
    """Latest value and data point count per metric name/type for a tool profile."""
    with session_scope() as session:
        profile_id = session.scalar(
            select(ToolProfile.id)
            .where(ToolProfile.customer_id == customer_id)
            .where(ToolProfile.vendor == vendor)
        )
        if profile_id is None:
            return []
        grouped = session.execute(
            select(
                TelemetryMetric.metric_name,
                TelemetryMetric.metric_type,
                func.count(TelemetryMetric.id),
                func.max(TelemetryMetric.time),
            )
            .where(TelemetryMetric.customer_id == customer_id)
            .where(TelemetryMetric.tool_profile_id == profile_id)
            .group_by(TelemetryMetric.metric_name, TelemetryMetric.metric_type)
            .order_by(TelemetryMetric.metric_name)
        ).all()

        summaries: List[Dict[str, Any]] = []
        for metric_name, metric_type, datapoints, _ in grouped:
            latest: Optional[TelemetryMetric] = session.scalar(
                select(TelemetryMetric)
                .where(TelemetryMetric.customer_id == customer_id)
                .where(TelemetryMetric.tool_profile_id == profile_id)
                .where(TelemetryMetric.metric_name == metric_name)
                .where(TelemetryMetric.metric_type == metric_type)
                .order_by(TelemetryMetric.time.desc(), TelemetryMetric.id.desc())
                .limit(1)
            )
            summaries.append(
                {
                    "metric_name": metric_name,
                    "metric_type": metric_type,
                    "unit": latest.unit if latest else None,
                    "description": latest.description if latest else None,
                    "datapoints": datapoints,
                    "latest_value": latest.value if latest else None,
                    "latest_time": _isoformat(latest.time) if latest else None,
                }
            )
        return summaries


__all__ = [
    "SpanWrite",
    "get_trace",
    "insert_log",
    "list_metric_summaries",
    "list_spans",
    "log_fingerprint",
    "metric_fingerprint",
    "span_to_dict",
    "upsert_metric",
    "upsert_span",
]
