"""Pre-flight budget checks and post-call settlement for gateway keys."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from usage_engine.governance.budgets import (
    BudgetDecision,
    Settlement,
    check_and_reserve,
    settle,
)

router = APIRouter(prefix="/v1/keys")


class ReserveRequest(BaseModel):
    estimated_cost_usd: Decimal = Field(ge=0)
    model: Optional[str] = None


class SettleRequest(BaseModel):
    actual_cost_usd: Decimal = Field(ge=0)
    reservation_id: Optional[str] = None


@router.post("/{key_hash}/reserve", response_model=BudgetDecision)
def reserve(key_hash: str, payload: ReserveRequest) -> BudgetDecision:
    """Deny outcomes are returned in the body with ``allowed: false``."""
    return check_and_reserve(key_hash, payload.estimated_cost_usd, payload.model)


@router.post("/{key_hash}/settle", response_model=Settlement)
def settle_usage(key_hash: str, payload: SettleRequest) -> Settlement:
    return settle(key_hash, payload.actual_cost_usd, payload.reservation_id)
