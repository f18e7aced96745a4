"""Key and guardrail lifecycle helpers used by the management layer."""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Sequence

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from usage_engine.core.exceptions import (
    GuardrailNotFoundError,
    InvalidKeyScopeError,
    KeyNotFoundError,
)
from usage_engine.storage.database import as_utc, session_scope
from usage_engine.storage.models import GatewayKey, Guardrail, GuardrailKeyAssignment
from usage_engine.storage.upsert import insert_ignore
from usage_engine.telemetry.events import record_event

from .budgets import RESET_CADENCES, next_reset_at
from .pricing import to_money

logger = logging.getLogger("usage_engine.governance.keys")

KEY_PREFIX = "ue_"

_UNSET: Any = object()


class CreatedKey(BaseModel):
    """The raw secret is only ever returned here; storage keeps the hash."""

    raw_key: str
    key: Dict[str, Any]


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_key() -> str:
    return f"{KEY_PREFIX}{uuid.uuid4().hex}"


def _check_cadence(cadence: str | None) -> None:
    if cadence is not None and cadence not in RESET_CADENCES:
        raise ValueError(f"budget_reset must be one of {', '.join(RESET_CADENCES)}")


def _money_or_none(value: Decimal | float | str | None) -> Decimal | None:
    return None if value is None else to_money(value)


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def key_to_dict(key: GatewayKey) -> Dict[str, Any]:
    return {
        "id": key.id,
        "customer_id": key.customer_id,
        "user_id": key.user_id,
        "team_id": key.team_id,
        "key_hash": key.key_hash,
        "name": key.name,
        "budget_usd": None if key.budget_usd is None else to_money(key.budget_usd),
        "spend_usd": to_money(key.spend_usd),
        "budget_reset": key.budget_reset,
        "spend_reset_at": _iso(key.spend_reset_at),
        "allowed_models": key.allowed_models,
        "disabled": bool(key.disabled),
        "created_by_user_id": key.created_by_user_id,
    }


def guardrail_to_dict(guardrail: Guardrail) -> Dict[str, Any]:
    return {
        "id": guardrail.id,
        "customer_id": guardrail.customer_id,
        "name": guardrail.name,
        "description": guardrail.description,
        "limit_usd": None if guardrail.limit_usd is None else to_money(guardrail.limit_usd),
        "reset_interval": guardrail.reset_interval,
        "allowed_models": guardrail.allowed_models,
        "allowed_providers": guardrail.allowed_providers,
    }


def _require_key(session: Session, key_hash: str) -> GatewayKey:
    key = session.scalar(select(GatewayKey).where(GatewayKey.key_hash == key_hash))
    if key is None:
        raise KeyNotFoundError(key_hash)
    return key


def _require_guardrail(session: Session, customer_id: str, guardrail_id: int) -> Guardrail:
    guardrail = session.scalar(
        select(Guardrail)
        .where(Guardrail.id == guardrail_id)
        .where(Guardrail.customer_id == customer_id)
    )
    if guardrail is None:
        raise GuardrailNotFoundError(guardrail_id)
    return guardrail


def create_key(
    customer_id: str,
    name: str,
    *,
    user_id: str | None = None,
    team_id: str | None = None,
    budget_usd: Decimal | float | str | None = None,
    budget_reset: str | None = None,
    allowed_models: Sequence[str] | None = None,
    created_by_user_id: str | None = None,
    now: datetime | None = None,
) -> CreatedKey:
    """Create a key scoped to exactly one user or team of ``customer_id``."""
    if (user_id is None) == (team_id is None):
        raise InvalidKeyScopeError()
    _check_cadence(budget_reset)

    raw_key = generate_key()
    now = as_utc(now) or datetime.now(timezone.utc)
    key = GatewayKey(
        customer_id=customer_id,
        user_id=user_id,
        team_id=team_id,
        key_hash=hash_key(raw_key),
        name=name,
        budget_usd=_money_or_none(budget_usd),
        spend_usd=Decimal("0"),
        budget_reset=budget_reset,
        spend_reset_at=next_reset_at(budget_reset, now) if budget_reset else None,
        allowed_models=list(allowed_models) if allowed_models else None,
        disabled=False,
        created_by_user_id=created_by_user_id,
    )
    with session_scope() as session:
        session.add(key)
        session.flush()
        data = key_to_dict(key)

    logger.info(
        "Key created",
        extra={"event": "key_created", "customer_id": customer_id, "key_hash": data["key_hash"]},
    )
    return CreatedKey(raw_key=raw_key, key=data)


def get_key(key_hash: str) -> Dict[str, Any]:
    with session_scope() as session:
        return key_to_dict(_require_key(session, key_hash))


def list_keys(customer_id: str) -> List[Dict[str, Any]]:
    with session_scope() as session:
        rows = session.scalars(
            select(GatewayKey).where(GatewayKey.customer_id == customer_id).order_by(GatewayKey.id)
        ).all()
        return [key_to_dict(row) for row in rows]


def update_key(
    key_hash: str,
    *,
    name: str | None = None,
    budget_usd: Any = _UNSET,
    budget_reset: Any = _UNSET,
    allowed_models: Any = _UNSET,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Change a key's settings. Omitted arguments are left as they are.

    Changing the cadence moves ``spend_reset_at`` to the new cadence's next
    boundary; spend itself is untouched.
    """
    with session_scope() as session:
        key = _require_key(session, key_hash)
        if name is not None:
            key.name = name
        if budget_usd is not _UNSET:
            key.budget_usd = _money_or_none(budget_usd)
        if budget_reset is not _UNSET:
            _check_cadence(budget_reset)
            key.budget_reset = budget_reset
            now = as_utc(now) or datetime.now(timezone.utc)
            key.spend_reset_at = next_reset_at(budget_reset, now) if budget_reset else None
        if allowed_models is not _UNSET:
            key.allowed_models = list(allowed_models) if allowed_models else None
        session.flush()
        return key_to_dict(key)


def set_key_disabled(key_hash: str, disabled: bool) -> Dict[str, Any]:
    """Disable (or re-enable) a key; takes effect on the next budget check."""
    with session_scope() as session:
        key = _require_key(session, key_hash)
        key.disabled = disabled
        session.flush()
        data = key_to_dict(key)

    kind = "key_disabled" if disabled else "key_enabled"
    logger.info("Key %s", "disabled" if disabled else "enabled", extra={"event": kind, "key_hash": key_hash})
    record_event(
        kind,
        "INFO",
        message=f"Key {'disabled' if disabled else 'enabled'}",
        customer_id=data["customer_id"],
        key_hash=key_hash,
    )
    return data


def delete_key(key_hash: str) -> bool:
    with session_scope() as session:
        key = session.scalar(select(GatewayKey).where(GatewayKey.key_hash == key_hash))
        if key is None:
            return False
        session.execute(delete(GuardrailKeyAssignment).where(GuardrailKeyAssignment.key_id == key.id))
        session.delete(key)
        return True


def create_guardrail(
    customer_id: str,
    name: str,
    *,
    description: str | None = None,
    limit_usd: Decimal | float | str | None = None,
    reset_interval: str | None = None,
    allowed_models: Sequence[str] | None = None,
    allowed_providers: Sequence[str] | None = None,
) -> Dict[str, Any]:
    _check_cadence(reset_interval)
    guardrail = Guardrail(
        customer_id=customer_id,
        name=name,
        description=description,
        limit_usd=_money_or_none(limit_usd),
        reset_interval=reset_interval,
        allowed_models=list(allowed_models) if allowed_models else None,
        allowed_providers=list(allowed_providers) if allowed_providers else None,
    )
    with session_scope() as session:
        session.add(guardrail)
        session.flush()
        return guardrail_to_dict(guardrail)


def delete_guardrail(customer_id: str, guardrail_id: int) -> None:
    with session_scope() as session:
        guardrail = _require_guardrail(session, customer_id, guardrail_id)
        session.execute(
            delete(GuardrailKeyAssignment).where(GuardrailKeyAssignment.guardrail_id == guardrail.id)
        )
        session.delete(guardrail)


def assign_guardrail(
    customer_id: str,
    guardrail_id: int,
    key_hashes: Sequence[str],
    *,
    assigned_by: str | None = None,
) -> int:
    """Attach a guardrail to keys of the same customer; returns how many were new."""
    assigned = 0
    with session_scope() as session:
        guardrail = _require_guardrail(session, customer_id, guardrail_id)
        key_ids = session.scalars(
            select(GatewayKey.id)
            .where(GatewayKey.customer_id == customer_id)
            .where(GatewayKey.key_hash.in_(list(key_hashes)))
        ).all()
        for key_id in key_ids:
            if insert_ignore(
                session,
                GuardrailKeyAssignment,
                {"guardrail_id": guardrail.id, "key_id": key_id, "assigned_by": assigned_by},
                ("guardrail_id", "key_id"),
            ):
                assigned += 1
    return assigned


def unassign_guardrail(customer_id: str, guardrail_id: int, key_hashes: Sequence[str]) -> int:
    with session_scope() as session:
        guardrail = _require_guardrail(session, customer_id, guardrail_id)
        key_ids = select(GatewayKey.id).where(GatewayKey.customer_id == customer_id).where(
            GatewayKey.key_hash.in_(list(key_hashes))
        )
        result = session.execute(
            delete(GuardrailKeyAssignment)
            .where(GuardrailKeyAssignment.guardrail_id == guardrail.id)
            .where(GuardrailKeyAssignment.key_id.in_(key_ids))
        )
        return result.rowcount


def list_guardrail_keys(customer_id: str, guardrail_id: int) -> List[Dict[str, Any]]:
    with session_scope() as session:
        guardrail = _require_guardrail(session, customer_id, guardrail_id)
        rows = session.scalars(
            select(GatewayKey)
            .join(GuardrailKeyAssignment, GuardrailKeyAssignment.key_id == GatewayKey.id)
            .where(GuardrailKeyAssignment.guardrail_id == guardrail.id)
            .order_by(GatewayKey.id)
        ).all()
        return [key_to_dict(row) for row in rows]


__all__ = [
    "CreatedKey",
    "assign_guardrail",
    "create_guardrail",
    "create_key",
    "delete_guardrail",
    "delete_key",
    "get_key",
    "hash_key",
    "list_guardrail_keys",
    "list_keys",
    "set_key_disabled",
    "unassign_guardrail",
    "update_key",
]
