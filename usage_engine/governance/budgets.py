"""Per-key budget enforcement, reservations and spend resets.

Spend is only ever changed by single SQL statements (``spend_usd = spend_usd
+ :cost``), never by reading a balance into Python and writing it back.
``check_and_reserve`` charges through a conditional UPDATE that re-evaluates
the limit under the database write lock, so concurrent reservations cannot
jointly pass the limit. ``settle`` and ingest-time charging apply actual cost
unconditionally, which bounds any overshoot to the request being settled.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from usage_engine.core.exceptions import KeyNotFoundError, ReservationNotFoundError
from usage_engine.ingest.vendors import provider_for_model, strip_provider_prefix
from usage_engine.storage.database import as_utc, session_scope
from usage_engine.storage.models import (
    BudgetReservation,
    GatewayKey,
    Guardrail,
    GuardrailKeyAssignment,
)
from usage_engine.telemetry.events import record_event

from .pricing import to_money

logger = logging.getLogger("usage_engine.governance.budgets")

RESET_CADENCES = ("daily", "weekly", "monthly")


class DenyReason(str, Enum):
    BUDGET_EXCEEDED = "budget_exceeded"
    MODEL_NOT_ALLOWED = "model_not_allowed"
    PROVIDER_NOT_ALLOWED = "provider_not_allowed"
    DISABLED = "disabled"
    KEY_NOT_FOUND = "key_not_found"


class BudgetDecision(BaseModel):
    allowed: bool
    reason: Optional[DenyReason] = None
    remaining_usd: Optional[Decimal] = None
    reservation_id: Optional[str] = None
    reserved_usd: Decimal = Decimal("0")


class Settlement(BaseModel):
    key_hash: str
    reservation_id: Optional[str] = None
    charged_usd: Decimal
    spend_usd: Decimal
    already_settled: bool = False


@dataclass
class KeyPolicy:
    """Most restrictive combination of a key's own settings and its guardrails."""

    limit_usd: Optional[Decimal]
    cadence: Optional[str]
    model_lists: List[List[str]] = field(default_factory=list)
    provider_lists: List[List[str]] = field(default_factory=list)

    def model_allowed(self, model: str | None) -> bool:
        if not model:
            return True
        requested = strip_provider_prefix(model).lower()
        return all(requested in allowed for allowed in self.model_lists)

    def provider_allowed(self, model: str | None) -> bool:
        if not model or not self.provider_lists:
            return True
        provider = provider_for_model(model)
        return provider is not None and all(provider in allowed for allowed in self.provider_lists)


def next_reset_at(cadence: str, now: datetime) -> datetime:
    """Next UTC boundary strictly after ``now``.

    daily: next midnight. weekly: next Monday 00:00. monthly: the first day
    of the following month 00:00.
    """
    now = as_utc(now)
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    if cadence == "daily":
        return midnight + timedelta(days=1)
    if cadence == "weekly":
        return midnight + timedelta(days=7 - now.weekday())
    if cadence == "monthly":
        if now.month == 12:
            return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    raise ValueError(f"Unknown reset cadence: {cadence}")


def _normalize_models(models: Sequence[str] | None) -> List[str]:
    return [strip_provider_prefix(m).lower() for m in models or [] if m]


def _inherited_cadence(intervals: Sequence[str | None]) -> Optional[str]:
    counts = Counter(i for i in intervals if i in RESET_CADENCES)
    if not counts:
        return None
    # Most frequent wins; ties go to the shorter cadence.
    return max(RESET_CADENCES, key=lambda c: (counts.get(c, 0), -RESET_CADENCES.index(c)))


def _guardrails_for(session: Session, key_id: int) -> List[Guardrail]:
    return list(
        session.scalars(
            select(Guardrail)
            .join(GuardrailKeyAssignment, GuardrailKeyAssignment.guardrail_id == Guardrail.id)
            .where(GuardrailKeyAssignment.key_id == key_id)
        ).all()
    )


def resolve_policy(session: Session, key: GatewayKey) -> KeyPolicy:
    guardrails = _guardrails_for(session, key.id)

    limits = [Decimal(key.budget_usd)] if key.budget_usd is not None else []
    limits.extend(Decimal(g.limit_usd) for g in guardrails if g.limit_usd is not None)

    model_lists = [_normalize_models(key.allowed_models)]
    model_lists.extend(_normalize_models(g.allowed_models) for g in guardrails)
    provider_lists = [[p.lower() for p in g.allowed_providers or [] if p] for g in guardrails]

    return KeyPolicy(
        limit_usd=min(limits) if limits else None,
        cadence=key.budget_reset or _inherited_cadence([g.reset_interval for g in guardrails]),
        # Empty allow-lists do not restrict.
        model_lists=[models for models in model_lists if models],
        provider_lists=[providers for providers in provider_lists if providers],
    )


def _reset_if_due(session: Session, key_id: int, cadence: str | None, now: datetime) -> bool:
    """Zero the spend when ``spend_reset_at`` has elapsed; returns True if this call reset it."""
    if cadence is None:
        return False
    boundary = next_reset_at(cadence, now)
    session.execute(
        update(GatewayKey)
        .where(GatewayKey.id == key_id)
        .where(GatewayKey.spend_reset_at.is_(None))
        .values(spend_reset_at=boundary)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(
        update(GatewayKey)
        .where(GatewayKey.id == key_id)
        .where(GatewayKey.spend_reset_at <= now)
        .values(spend_usd=Decimal("0"), spend_reset_at=boundary)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _load_key(session: Session, key_hash: str) -> GatewayKey | None:
    return session.scalar(select(GatewayKey).where(GatewayKey.key_hash == key_hash))


def _current_spend(session: Session, key_id: int) -> Decimal:
    value = session.scalar(select(GatewayKey.spend_usd).where(GatewayKey.id == key_id))
    return to_money(value)


def _add_spend(session: Session, key_id: int, amount: Decimal) -> None:
    new_spend = GatewayKey.spend_usd + amount
    session.execute(
        update(GatewayKey)
        .where(GatewayKey.id == key_id)
        .values(spend_usd=case((new_spend < 0, Decimal("0")), else_=new_spend))
        .execution_options(synchronize_session=False)
    )


def _denied(
    reason: DenyReason,
    key_hash: str,
    *,
    customer_id: str | None = None,
    model: str | None = None,
    remaining: Decimal | None = None,
) -> BudgetDecision:
    logger.info(
        "Budget check denied",
        extra={"event": "budget_denied", "key_hash": key_hash, "reason": reason.value, "model": model},
    )
    record_event(
        "budget_denied",
        "WARNING",
        message=f"Request denied: {reason.value}",
        customer_id=customer_id,
        key_hash=key_hash,
        model=model,
        error_code=reason.value,
    )
    return BudgetDecision(allowed=False, reason=reason, remaining_usd=remaining)


def _record_reset(key_hash: str, customer_id: str | None) -> None:
    logger.info("Key spend reset", extra={"event": "spend_reset", "key_hash": key_hash})
    record_event("spend_reset", "INFO", message="Spend reset", customer_id=customer_id, key_hash=key_hash)


def check_and_reserve(
    key_hash: str,
    estimated_cost: Decimal | float | int | str,
    model: str | None = None,
    *,
    now: datetime | None = None,
) -> BudgetDecision:
    """Gate one billable call and reserve its estimated cost.

    Denials are ordinary return values. When allowed, the estimate has
    already been added to ``spend_usd`` and ``reservation_id`` identifies it
    for a later :func:`settle`.
    """
    cost = to_money(estimated_cost)
    now = as_utc(now) or datetime.now(timezone.utc)
    deny: DenyReason | None = None
    remaining: Decimal | None = None
    reservation_id: str | None = None
    was_reset = False
    customer_id: str | None = None

    with session_scope() as session:
        key = _load_key(session, key_hash)
        if key is None:
            deny = DenyReason.KEY_NOT_FOUND
        else:
            customer_id = key.customer_id
            policy = resolve_policy(session, key)
            was_reset = _reset_if_due(session, key.id, policy.cadence, now)
            if key.disabled:
                deny = DenyReason.DISABLED
            elif not policy.model_allowed(model):
                deny = DenyReason.MODEL_NOT_ALLOWED
            elif not policy.provider_allowed(model):
                deny = DenyReason.PROVIDER_NOT_ALLOWED
            else:
                new_spend = GatewayKey.spend_usd + cost
                stmt = (
                    update(GatewayKey)
                    .where(GatewayKey.id == key.id)
                    .where(GatewayKey.disabled.is_(False))
                )
                if policy.limit_usd is not None:
                    stmt = stmt.where(new_spend <= policy.limit_usd)
                result = session.execute(
                    stmt.values(spend_usd=new_spend).execution_options(synchronize_session=False)
                )
                spend = _current_spend(session, key.id)
                if policy.limit_usd is not None:
                    remaining = max(policy.limit_usd - spend, Decimal("0"))
                if result.rowcount != 1:
                    deny = DenyReason.BUDGET_EXCEEDED
                else:
                    reservation_id = uuid.uuid4().hex
                    session.add(
                        BudgetReservation(
                            id=reservation_id,
                            key_id=key.id,
                            model=model,
                            estimated_usd=cost,
                        )
                    )

    # Audit writes open their own session, so they run after the charge commits.
    if was_reset:
        _record_reset(key_hash, customer_id)
    if deny is not None:
        return _denied(deny, key_hash, customer_id=customer_id, model=model, remaining=remaining)
    return BudgetDecision(
        allowed=True,
        remaining_usd=remaining,
        reservation_id=reservation_id,
        reserved_usd=cost,
    )


def settle(
    key_hash: str,
    actual_cost: Decimal | float | int | str,
    reservation_id: str | None = None,
) -> Settlement:
    """Reconcile the real cost of a call.

    With a reservation only the difference between actual and estimate is
    applied, once; settling the same reservation again is a no-op. Without
    one the full actual cost is charged.
    """
    actual = to_money(actual_cost)
    with session_scope() as session:
        key = _load_key(session, key_hash)
        if key is None:
            raise KeyNotFoundError(key_hash)

        if reservation_id is None:
            _add_spend(session, key.id, actual)
            return Settlement(
                key_hash=key_hash,
                charged_usd=actual,
                spend_usd=_current_spend(session, key.id),
            )

        reservation = session.get(BudgetReservation, reservation_id)
        if reservation is None or reservation.key_id != key.id:
            raise ReservationNotFoundError(reservation_id)
        if reservation.settled_at is not None:
            return Settlement(
                key_hash=key_hash,
                reservation_id=reservation_id,
                charged_usd=Decimal("0"),
                spend_usd=_current_spend(session, key.id),
                already_settled=True,
            )

        claimed = session.execute(
            update(BudgetReservation)
            .where(BudgetReservation.id == reservation_id)
            .where(BudgetReservation.settled_at.is_(None))
            .values(actual_usd=actual, settled_at=datetime.now(timezone.utc))
        )
        delta = Decimal("0")
        if claimed.rowcount == 1:
            delta = actual - to_money(reservation.estimated_usd)
            _add_spend(session, key.id, delta)
        return Settlement(
            key_hash=key_hash,
            reservation_id=reservation_id,
            charged_usd=delta,
            spend_usd=_current_spend(session, key.id),
            already_settled=claimed.rowcount != 1,
        )


def charge_usage(session: Session, key_hash: str, cost: Decimal, *, now: datetime | None = None) -> bool:
    """Charge metered usage inside the caller's transaction.

    Returns False when the key is unknown. The charge is unconditional: the
    usage already happened.
    """
    key = _load_key(session, key_hash)
    if key is None:
        return False
    policy = resolve_policy(session, key)
    _reset_if_due(session, key.id, policy.cadence, as_utc(now) or datetime.now(timezone.utc))
    if cost > 0:
        _add_spend(session, key.id, to_money(cost))
    return True


def reset_key(key_hash: str, *, now: datetime | None = None, force: bool = False) -> bool:
    """Reset the key's spend if its period has elapsed (or unconditionally with ``force``)."""
    now = as_utc(now) or datetime.now(timezone.utc)
    with session_scope() as session:
        key = _load_key(session, key_hash)
        if key is None:
            raise KeyNotFoundError(key_hash)
        customer_id = key.customer_id
        policy = resolve_policy(session, key)
        if force:
            boundary = next_reset_at(policy.cadence, now) if policy.cadence else None
            session.execute(
                update(GatewayKey)
                .where(GatewayKey.id == key.id)
                .values(spend_usd=Decimal("0"), spend_reset_at=boundary)
                .execution_options(synchronize_session=False)
            )
            was_reset = True
        else:
            was_reset = _reset_if_due(session, key.id, policy.cadence, now)
    if was_reset:
        _record_reset(key_hash, customer_id)
    return was_reset


__all__ = [
    "BudgetDecision",
    "DenyReason",
    "KeyPolicy",
    "Settlement",
    "charge_usage",
    "check_and_reserve",
    "next_reset_at",
    "reset_key",
    "resolve_policy",
    "settle",
]
