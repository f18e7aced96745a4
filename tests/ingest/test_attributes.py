from __future__ import annotations

import pytest

from usage_engine.ingest.attributes import (
    any_value_to_native,
    flatten_attributes,
    input_tokens,
    output_tokens,
    parse_count,
)


def test_flatten_stringifies_each_value_kind():
    attrs = flatten_attributes(
        [
            {"key": "service.name", "value": {"stringValue": "openai-sdk"}},
            {"key": "gen_ai.usage.input_tokens", "value": {"intValue": "120"}},
            {"key": "ratio", "value": {"doubleValue": 0.5}},
            {"key": "whole", "value": {"doubleValue": 3.0}},
            {"key": "stream", "value": {"boolValue": True}},
            {"key": "blob", "value": {"bytesValue": "aGk="}},
            {"key": "tags", "value": {"arrayValue": {"values": [{"stringValue": "a"}, {"intValue": "2"}]}}},
            {"key": "empty", "value": {}},
        ]
    )

    assert attrs == {
        "service.name": "openai-sdk",
        "gen_ai.usage.input_tokens": "120",
        "ratio": "0.5",
        "whole": "3",
        "stream": "true",
        "blob": "aGk=",
        "tags": '["a",2]',
        "empty": "",
    }


def test_flatten_expands_kvlist_into_dotted_keys():
    attrs = flatten_attributes(
        [
            {
                "key": "trace.metadata",
                "value": {
                    "kvlistValue": {
                        "values": [
                            {"key": "user_id", "value": {"stringValue": "u-1"}},
                            {
                                "key": "team",
                                "value": {"kvlistValue": {"values": [{"key": "id", "value": {"stringValue": "t-9"}}]}},
                            },
                        ]
                    }
                },
            }
        ]
    )

    assert attrs == {"trace.metadata.user_id": "u-1", "trace.metadata.team.id": "t-9"}


def test_flatten_accepts_plain_nested_mapping():
    attrs = flatten_attributes({"gen_ai": {"system": "anthropic", "usage": {"input_tokens": 12}}, "ok": False})

    assert attrs == {
        "gen_ai.system": "anthropic",
        "gen_ai.usage.input_tokens": "12",
        "ok": "false",
    }


def test_flatten_skips_entries_without_keys():
    assert flatten_attributes([{"value": {"stringValue": "x"}}, "junk", {"key": ""}]) == {}
    assert flatten_attributes(None) == {}


def test_flatten_tolerates_malformed_containers():
    attrs = flatten_attributes(
        [
            {"key": "bare", "value": {"arrayValue": [1, 2]}},
            {"key": "broken", "value": {"arrayValue": "nope"}},
            {"key": "listed", "value": {"kvlistValue": [{"key": "a", "value": {"stringValue": "x"}}]}},
            {"key": "odd", "value": {"kvlistValue": 7}},
        ]
    )

    assert attrs == {"bare": "[1,2]", "broken": "[]", "listed.a": "x", "odd": ""}
    assert flatten_attributes(42) == {}
    assert flatten_attributes("not a list") == {}


def test_any_value_to_native_decodes_arrays_and_lists():
    value = {
        "kvlistValue": {
            "values": [
                {"key": "n", "value": {"intValue": "7"}},
                {"key": "xs", "value": {"arrayValue": {"values": [{"doubleValue": 1.5}]}}},
            ]
        }
    }

    assert any_value_to_native(value) == {"n": 7, "xs": [1.5]}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("120", 120), ("12.0", 12), ("", 0), (None, 0), ("-4", 0), ("nan", 0), ("abc", 0)],
)
def test_parse_count(raw, expected):
    assert parse_count(raw) == expected


def test_token_helpers_fall_back_to_legacy_keys():
    attrs = {"gen_ai.usage.prompt_tokens": "30", "gen_ai.usage.completion_tokens": "12"}

    assert input_tokens(attrs) == 30
    assert output_tokens(attrs) == 12
    assert input_tokens({"gen_ai.usage.input_tokens": "5", "gen_ai.usage.prompt_tokens": "30"}) == 5
