"""Tool profile registry: one aggregate identity per (tenant, vendor)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from usage_engine.core.exceptions import ToolProfileNotFoundError

from .database import as_utc, session_scope
from .models import TelemetryLog, TelemetryMetric, TelemetrySpan, ToolProfile, ToolProfileTrace
from .spans import SpanWrite
from .upsert import insert_ignore

logger = logging.getLogger("usage_engine.storage.profiles")


def ensure_tool_profile(
    session: Session,
    customer_id: str,
    vendor: str,
    *,
    display_name: str,
    vendor_category: str | None,
) -> int:
    """Return the profile id for ``(customer_id, vendor)``, creating it on first sight."""
    created = insert_ignore(
        session,
        ToolProfile,
        {
            "customer_id": customer_id,
            "vendor": vendor,
            "display_name": display_name,
            "vendor_category": vendor_category,
            "total_spans": 0,
            "total_traces": 0,
            "total_errors": 0,
        },
        ("customer_id", "vendor"),
    )
    if created:
        logger.info(
            "Tool profile created",
            extra={"event": "tool_profile_created", "customer_id": customer_id, "vendor": vendor},
        )
    profile_id = session.scalar(
        select(ToolProfile.id)
        .where(ToolProfile.customer_id == customer_id)
        .where(ToolProfile.vendor == vendor)
    )
    return int(profile_id)


def touch_tool_profile(
    session: Session,
    profile_id: int,
    *,
    trace_id: str,
    start_time: datetime,
    write: SpanWrite,
) -> None:
    """Fold one span write into the profile counters with a single UPDATE.

    ``total_spans`` only grows for newly inserted spans. ``total_errors``
    follows each span's current status: it grows when a span moves into
    ERROR and shrinks when a later report clears it, so replays leave the
    counters unchanged. ``total_traces`` is exact: it grows only when the
    trace id is new to the profile's distinct-trace index.
    """
    new_trace = insert_ignore(
        session,
        ToolProfileTrace,
        {"tool_profile_id": profile_id, "trace_id": trace_id},
        ("tool_profile_id", "trace_id"),
    )
    seen_at = as_utc(start_time)
    session.execute(
        update(ToolProfile)
        .where(ToolProfile.id == profile_id)
        .values(
            total_spans=ToolProfile.total_spans + (1 if write.inserted else 0),
            total_traces=ToolProfile.total_traces + (1 if new_trace else 0),
            total_errors=ToolProfile.total_errors + (int(write.became_error) - int(write.cleared_error)),
            first_seen_at=func.coalesce(ToolProfile.first_seen_at, seen_at),
            last_seen_at=case(
                (
                    or_(ToolProfile.last_seen_at.is_(None), ToolProfile.last_seen_at < seen_at),
                    seen_at,
                ),
                else_=ToolProfile.last_seen_at,
            ),
        )
        .execution_options(synchronize_session=False)
    )


def profile_to_dict(profile: ToolProfile) -> Dict[str, Any]:
    first_seen = as_utc(profile.first_seen_at)
    last_seen = as_utc(profile.last_seen_at)
    return {
        "id": profile.id,
        "vendor": profile.vendor,
        "display_name": profile.display_name,
        "vendor_category": profile.vendor_category,
        "total_spans": profile.total_spans,
        "total_traces": profile.total_traces,
        "total_errors": profile.total_errors,
        "first_seen_at": first_seen.isoformat() if first_seen else None,
        "last_seen_at": last_seen.isoformat() if last_seen else None,
    }


def get_tool_profile(customer_id: str, vendor: str) -> Dict[str, Any]:
    with session_scope() as session:
        profile = session.scalar(
            select(ToolProfile)
            .where(ToolProfile.customer_id == customer_id)
            .where(ToolProfile.vendor == vendor)
        )
        if profile is None:
            raise ToolProfileNotFoundError(customer_id, vendor)
        return profile_to_dict(profile)


def list_tool_profiles(customer_id: str) -> List[Dict[str, Any]]:
    """Return the tenant's profiles, most recently active first."""
    with session_scope() as session:
        rows = session.scalars(
            select(ToolProfile)
            .where(ToolProfile.customer_id == customer_id)
            .order_by(ToolProfile.last_seen_at.desc(), ToolProfile.vendor.asc())
        ).all()
        return [profile_to_dict(row) for row in rows]


def delete_tool_profile(customer_id: str, vendor: str) -> Dict[str, int]:
    """Delete a profile together with its spans, metrics, logs and trace index."""
    with session_scope() as session:
        profile_id = session.scalar(
            select(ToolProfile.id)
            .where(ToolProfile.customer_id == customer_id)
            .where(ToolProfile.vendor == vendor)
        )
        if profile_id is None:
            raise ToolProfileNotFoundError(customer_id, vendor)

        removed: Dict[str, int] = {}
        for label, model in (
            ("spans", TelemetrySpan),
            ("metrics", TelemetryMetric),
            ("logs", TelemetryLog),
        ):
            result = session.execute(
                delete(model)
                .where(model.customer_id == customer_id)
                .where(or_(model.tool_profile_id == profile_id, model.vendor == vendor))
            )
            removed[label] = result.rowcount
        session.execute(delete(ToolProfileTrace).where(ToolProfileTrace.tool_profile_id == profile_id))
        session.execute(delete(ToolProfile).where(ToolProfile.id == profile_id))

    logger.info(
        "Tool profile deleted",
        extra={"event": "tool_profile_deleted", "customer_id": customer_id, "vendor": vendor, **removed},
    )
    return removed


__all__ = [
    "delete_tool_profile",
    "ensure_tool_profile",
    "get_tool_profile",
    "list_tool_profiles",
    "profile_to_dict",
    "touch_tool_profile",
]
