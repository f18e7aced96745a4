from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from usage_engine.core.exceptions import KeyNotFoundError, ReservationNotFoundError
from usage_engine.governance import budgets
from usage_engine.governance.budgets import DenyReason, check_and_reserve, next_reset_at, reset_key, settle
from usage_engine.governance.keys import (
    assign_guardrail,
    create_guardrail,
    create_key,
    get_key,
    set_key_disabled,
)
from usage_engine.storage import database
from usage_engine.telemetry import events

DAY1 = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def _key(**kwargs) -> str:
    kwargs.setdefault("user_id", "u-1")
    return create_key("acme", "test key", **kwargs).key["key_hash"]


def _spend(key_hash: str) -> Decimal:
    return get_key(key_hash)["spend_usd"]


def test_reserve_charges_estimate_and_reports_remaining():
    key_hash = _key(budget_usd="5")

    decision = check_and_reserve(key_hash, Decimal("2"))

    assert decision.allowed is True
    assert decision.reason is None
    assert decision.remaining_usd == Decimal("3")
    assert decision.reserved_usd == Decimal("2")
    assert decision.reservation_id
    assert _spend(key_hash) == Decimal("2")


def test_reserve_over_budget_is_denied_without_charging():
    key_hash = _key(budget_usd="1")

    decision = check_and_reserve(key_hash, 2)

    assert decision.allowed is False
    assert decision.reason == DenyReason.BUDGET_EXCEEDED
    assert decision.reservation_id is None
    assert decision.remaining_usd == Decimal("1")
    assert _spend(key_hash) == Decimal("0")


def test_key_without_budget_is_unlimited():
    key_hash = _key()

    decision = check_and_reserve(key_hash, 1000)

    assert decision.allowed is True
    assert decision.remaining_usd is None


def test_unknown_key_is_denied():
    decision = check_and_reserve("missing", 1)

    assert decision.allowed is False
    assert decision.reason == DenyReason.KEY_NOT_FOUND


def test_disabled_key_is_denied():
    key_hash = _key(budget_usd="5")
    set_key_disabled(key_hash, True)

    assert check_and_reserve(key_hash, 1).reason == DenyReason.DISABLED

    set_key_disabled(key_hash, False)
    assert check_and_reserve(key_hash, 1).allowed is True


def test_model_allow_list():
    key_hash = _key(allowed_models=["gpt-4o"])

    assert check_and_reserve(key_hash, 0, "openai/gpt-4o").allowed is True
    assert check_and_reserve(key_hash, 0, "GPT-4o").allowed is True
    assert check_and_reserve(key_hash, 0).allowed is True
    denied = check_and_reserve(key_hash, 0, "claude-sonnet-4-5")
    assert denied.reason == DenyReason.MODEL_NOT_ALLOWED


def test_guardrail_provider_list_and_tightest_limit():
    key_hash = _key(budget_usd="10")
    guardrail = create_guardrail("acme", "anthropic only", limit_usd="3", allowed_providers=["anthropic"])
    assert assign_guardrail("acme", guardrail["id"], [key_hash]) == 1

    assert check_and_reserve(key_hash, 1, "gpt-4o").reason == DenyReason.PROVIDER_NOT_ALLOWED
    assert check_and_reserve(key_hash, 4, "claude-sonnet-4-5").reason == DenyReason.BUDGET_EXCEEDED
    allowed = check_and_reserve(key_hash, 3, "claude-sonnet-4-5")
    assert allowed.allowed is True
    assert allowed.remaining_usd == Decimal("0")


def test_settle_applies_difference_once():
    key_hash = _key(budget_usd="5")
    decision = check_and_reserve(key_hash, 2)

    first = settle(key_hash, Decimal("1.5"), decision.reservation_id)
    again = settle(key_hash, Decimal("1.5"), decision.reservation_id)

    assert first.charged_usd == Decimal("-0.5")
    assert first.spend_usd == Decimal("1.5")
    assert first.already_settled is False
    assert again.already_settled is True
    assert again.charged_usd == Decimal("0")
    assert _spend(key_hash) == Decimal("1.5")


def test_settle_without_reservation_charges_actual_cost():
    key_hash = _key()

    result = settle(key_hash, "0.25")

    assert result.charged_usd == Decimal("0.25")
    assert _spend(key_hash) == Decimal("0.25")


def test_settle_overshoot_is_bounded_to_one_request():
    key_hash = _key(budget_usd="1")
    decision = check_and_reserve(key_hash, 1)

    settle(key_hash, Decimal("1.4"), decision.reservation_id)

    assert _spend(key_hash) == Decimal("1.4")
    assert check_and_reserve(key_hash, Decimal("0.01")).reason == DenyReason.BUDGET_EXCEEDED


def test_settle_errors():
    key_hash = _key()
    other = _key(user_id="u-2")
    reservation_id = check_and_reserve(other, 1).reservation_id

    with pytest.raises(KeyNotFoundError):
        settle("missing", 1)
    with pytest.raises(ReservationNotFoundError):
        settle(key_hash, 1, "nope")
    with pytest.raises(ReservationNotFoundError):
        settle(key_hash, 1, reservation_id)


def test_daily_reset_on_next_check():
    key_hash = _key(budget_usd="5", budget_reset="daily", now=DAY1)
    assert check_and_reserve(key_hash, 4, now=DAY1).allowed is True
    assert check_and_reserve(key_hash, 4, now=DAY1 + timedelta(hours=2)).allowed is False

    decision = check_and_reserve(key_hash, 1, now=datetime(2026, 10, 20, 1, 0, tzinfo=timezone.utc))

    assert decision.allowed is True
    key = get_key(key_hash)
    assert key["spend_usd"] == Decimal("1")
    assert key["spend_reset_at"] == "2026-10-21T00:00:00+00:00"


def test_guardrail_cadence_resets_key_spend():
    key_hash = _key(budget_usd="5")
    guardrail = create_guardrail("acme", "weekly cap", limit_usd="5", reset_interval="weekly")
    assign_guardrail("acme", guardrail["id"], [key_hash])

    first = check_and_reserve(key_hash, 4, "gpt-4o", now=DAY1)
    assert first.allowed is True
    assert get_key(key_hash)["spend_reset_at"] == "2026-10-26T00:00:00+00:00"
    assert check_and_reserve(key_hash, 4, "gpt-4o", now=DAY1 + timedelta(days=2)).reason == DenyReason.BUDGET_EXCEEDED

    after = check_and_reserve(key_hash, 4, "gpt-4o", now=datetime(2026, 10, 26, 1, 0, tzinfo=timezone.utc))

    assert after.allowed is True
    assert _spend(key_hash) == Decimal("4")
    assert get_key(key_hash)["spend_reset_at"] == "2026-11-02T00:00:00+00:00"


def test_reset_key_force_and_when_due():
    key_hash = _key(budget_usd="5", budget_reset="monthly", now=DAY1)
    check_and_reserve(key_hash, 3, now=DAY1)

    assert reset_key(key_hash, now=DAY1) is False
    assert _spend(key_hash) == Decimal("3")
    assert reset_key(key_hash, now=datetime(2026, 11, 1, 0, 0, tzinfo=timezone.utc)) is True
    assert _spend(key_hash) == Decimal("0")

    check_and_reserve(key_hash, 2, now=DAY1)
    assert reset_key(key_hash, now=DAY1, force=True) is True
    assert _spend(key_hash) == Decimal("0")
    with pytest.raises(KeyNotFoundError):
        reset_key("missing")


@pytest.mark.parametrize(
    ("cadence", "now", "expected"),
    [
        ("daily", datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc), datetime(2026, 10, 20, tzinfo=timezone.utc)),
        ("weekly", datetime(2026, 10, 21, 8, 0, tzinfo=timezone.utc), datetime(2026, 10, 26, tzinfo=timezone.utc)),
        ("weekly", datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc), datetime(2026, 10, 26, tzinfo=timezone.utc)),
        ("monthly", datetime(2026, 12, 15, tzinfo=timezone.utc), datetime(2027, 1, 1, tzinfo=timezone.utc)),
        ("monthly", datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc), datetime(2026, 2, 1, tzinfo=timezone.utc)),
    ],
)
def test_next_reset_at(cadence, now, expected):
    assert next_reset_at(cadence, now) == expected


def test_next_reset_at_rejects_unknown_cadence():
    with pytest.raises(ValueError):
        next_reset_at("hourly", DAY1)


def test_guardrail_cadence_is_inherited():
    assert budgets._inherited_cadence(["weekly", "daily", "daily"]) == "daily"
    assert budgets._inherited_cadence(["monthly", "weekly", "weekly"]) == "weekly"
    assert budgets._inherited_cadence(["weekly", "daily"]) == "daily"
    assert budgets._inherited_cadence([None, "yearly"]) is None


@pytest.fixture
def file_db(tmp_path, monkeypatch):
    """Concurrent reservations need a real file so every thread gets its own connection."""

    engine = create_engine(
        f"sqlite:///{tmp_path / 'budgets.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=50,
        future=True,
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    database.Base.metadata.create_all(engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSession)
    monkeypatch.setattr(events, "_EVENTS_ENABLED", False)

    yield engine

    engine.dispose()


def test_concurrent_reservations_never_exceed_budget(file_db):
    key_hash = _key(budget_usd="10")

    with ThreadPoolExecutor(max_workers=50) as pool:
        decisions = list(pool.map(lambda _: check_and_reserve(key_hash, Decimal("1")), range(50)))

    allowed = [d for d in decisions if d.allowed]
    denied = [d for d in decisions if not d.allowed]
    assert len(allowed) == 10
    assert len(denied) == 40
    assert {d.reason for d in denied} == {DenyReason.BUDGET_EXCEEDED}
    assert len({d.reservation_id for d in allowed}) == 10
    assert Decimal("10") <= _spend(key_hash) <= Decimal("11")
