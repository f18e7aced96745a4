"""Admin endpoints for inspecting engine audit events."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from usage_engine.telemetry.events import list_recent_events

from .dependencies import CredentialDep

router = APIRouter(prefix="/admin")


@router.get("/events")
def list_events(credential: CredentialDep, limit: int = 25, kind: Optional[str] = None) -> dict:
    """Return recent engine events, restricted to the caller's tenant when one is presented."""
    limit_value = max(1, min(limit, 100))
    events = list_recent_events(limit=limit_value, customer_id=credential.customer_id, kind=kind)
    return {"events": events}
