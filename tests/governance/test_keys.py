from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from usage_engine.core.exceptions import GuardrailNotFoundError, InvalidKeyScopeError, KeyNotFoundError
from usage_engine.governance.keys import (
    KEY_PREFIX,
    assign_guardrail,
    create_guardrail,
    create_key,
    delete_guardrail,
    delete_key,
    get_key,
    hash_key,
    list_guardrail_keys,
    list_keys,
    set_key_disabled,
    unassign_guardrail,
    update_key,
)
from usage_engine.telemetry.events import list_recent_events

NOW = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def test_create_key_returns_raw_secret_once():
    created = create_key("acme", "ci", team_id="platform", budget_usd=25, created_by_user_id="admin")

    assert created.raw_key.startswith(KEY_PREFIX)
    assert created.key["key_hash"] == hash_key(created.raw_key)
    assert created.key["team_id"] == "platform"
    assert created.key["user_id"] is None
    assert created.key["budget_usd"] == Decimal("25")
    assert created.key["spend_usd"] == Decimal("0")
    assert "raw_key" not in get_key(created.key["key_hash"])


@pytest.mark.parametrize("scope", [{}, {"user_id": "u-1", "team_id": "t-1"}])
def test_create_key_requires_exactly_one_scope(scope):
    with pytest.raises(InvalidKeyScopeError):
        create_key("acme", "bad", **scope)


def test_create_key_rejects_unknown_cadence():
    with pytest.raises(ValueError):
        create_key("acme", "bad", user_id="u-1", budget_reset="hourly")


def test_create_key_sets_first_reset_boundary():
    created = create_key("acme", "weekly", user_id="u-1", budget_reset="weekly", now=NOW)

    assert created.key["spend_reset_at"] == "2026-10-26T00:00:00+00:00"


def test_list_keys_is_tenant_scoped():
    create_key("acme", "one", user_id="u-1")
    create_key("acme", "two", team_id="t-1")
    create_key("globex", "three", user_id="u-9")

    assert [k["name"] for k in list_keys("acme")] == ["one", "two"]
    assert [k["name"] for k in list_keys("globex")] == ["three"]


def test_update_key_only_touches_given_fields():
    key_hash = create_key("acme", "ci", user_id="u-1", budget_usd=10, allowed_models=["gpt-4o"]).key["key_hash"]

    updated = update_key(key_hash, budget_reset="daily", now=NOW)
    assert updated["budget_usd"] == Decimal("10")
    assert updated["allowed_models"] == ["gpt-4o"]
    assert updated["spend_reset_at"] == "2026-10-20T00:00:00+00:00"

    cleared = update_key(key_hash, name="renamed", budget_usd=None, allowed_models=[], budget_reset=None)
    assert cleared["name"] == "renamed"
    assert cleared["budget_usd"] is None
    assert cleared["allowed_models"] is None
    assert cleared["spend_reset_at"] is None

    with pytest.raises(KeyNotFoundError):
        update_key("missing", name="x")


def test_disable_records_event():
    key_hash = create_key("acme", "ci", user_id="u-1").key["key_hash"]

    assert set_key_disabled(key_hash, True)["disabled"] is True

    (event,) = list_recent_events(customer_id="acme", kind="key_disabled")
    assert event["key_hash"] == key_hash


def test_delete_key():
    key_hash = create_key("acme", "ci", user_id="u-1").key["key_hash"]
    guardrail = create_guardrail("acme", "cap", limit_usd=5)
    assign_guardrail("acme", guardrail["id"], [key_hash])

    assert delete_key(key_hash) is True
    assert delete_key(key_hash) is False
    assert list_guardrail_keys("acme", guardrail["id"]) == []
    with pytest.raises(KeyNotFoundError):
        get_key(key_hash)


def test_guardrail_assignment_is_tenant_scoped_and_idempotent():
    mine = create_key("acme", "mine", user_id="u-1").key["key_hash"]
    theirs = create_key("globex", "theirs", user_id="u-9").key["key_hash"]
    guardrail = create_guardrail("acme", "models", allowed_models=["gpt-4o"], reset_interval="weekly")

    assert guardrail["allowed_models"] == ["gpt-4o"]
    assert assign_guardrail("acme", guardrail["id"], [mine, theirs], assigned_by="admin") == 1
    assert assign_guardrail("acme", guardrail["id"], [mine]) == 0
    assert [k["key_hash"] for k in list_guardrail_keys("acme", guardrail["id"])] == [mine]

    assert unassign_guardrail("acme", guardrail["id"], [mine]) == 1
    assert list_guardrail_keys("acme", guardrail["id"]) == []


def test_guardrail_of_other_tenant_is_not_found():
    guardrail = create_guardrail("acme", "cap", limit_usd=5)

    with pytest.raises(GuardrailNotFoundError):
        assign_guardrail("globex", guardrail["id"], [])
    with pytest.raises(GuardrailNotFoundError):
        delete_guardrail("globex", guardrail["id"])

    delete_guardrail("acme", guardrail["id"])
    with pytest.raises(GuardrailNotFoundError):
        list_guardrail_keys("acme", guardrail["id"])
