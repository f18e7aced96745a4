from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from usage_engine.core.exceptions import DeadlineExceededError, ToolProfileNotFoundError
from usage_engine.ingest.normalizer import IngestNormalizer
from usage_engine.ingest.records import TenantCredential
from usage_engine.rollup.engine import (
    Granularity,
    bucket_starts,
    get_rollup,
    histogram_percentiles,
    latency_stats,
    metric_llm_stats,
    percentile,
    profile_latency,
)

START = datetime(2026, 4, 6, 0, 0, tzinfo=timezone.utc)
START_NS = int(START.timestamp()) * 1_000_000_000
MS = 1_000_000

ACME = TenantCredential(customer_id="acme")


def _attrs(values: dict) -> list[dict]:
    return [{"key": key, "value": {"stringValue": value}} for key, value in values.items()]


def _ingest_spans(spans: list[dict], service: str = "openai-sdk", credential: TenantCredential = ACME) -> None:
    IngestNormalizer().ingest(
        credential,
        {
            "resourceSpans": [
                {
                    "resource": {"attributes": _attrs({"service.name": service})},
                    "scopeSpans": [{"spans": spans}],
                }
            ]
        },
    )


def _span(span_id: str, *, minute: int, duration_ms: int, trace_id: str = "t1", **extra) -> dict:
    start = START_NS + minute * 60_000 * MS
    return {
        "traceId": trace_id,
        "spanId": span_id,
        "name": extra.pop("name", "chat"),
        "startTimeUnixNano": str(start),
        "endTimeUnixNano": str(start + duration_ms * MS),
        "status": {"code": extra.pop("status", 0)},
        "attributes": _attrs(extra.pop("attrs", {})),
    }


def test_percentile_reference_values():
    durations = list(range(10, 1001, 10))

    stats = latency_stats(reversed(durations))

    assert stats.samples == 100
    assert stats.p50 == pytest.approx(505.0)
    assert stats.p95 == pytest.approx(950.5)
    assert stats.p99 == pytest.approx(990.1)
    assert stats.avg == pytest.approx(505.0)


def test_percentile_edges():
    assert percentile([], 0.5) is None
    assert percentile([42.0], 0.99) == 42.0
    assert percentile([1.0, 2.0], 0.0) == 1.0
    assert percentile([1.0, 2.0], 1.0) == 2.0
    with pytest.raises(ValueError):
        percentile([1.0], 1.5)


def test_empty_window_is_zero_filled():
    stats = get_rollup("acme", start=START, end=START + timedelta(hours=3))

    assert stats.span_count == 0
    assert stats.error_rate == 0.0
    assert stats.latency.samples == 0
    assert stats.latency.p50 is None
    assert [bucket.start for bucket in stats.timeline] == [
        START,
        START + timedelta(hours=1),
        START + timedelta(hours=2),
    ]
    assert all(bucket.span_count == 0 for bucket in stats.timeline)


def test_rollup_buckets_breakdowns_and_errors():
    _ingest_spans(
        [
            _span("a", minute=5, duration_ms=100, attrs={"gen_ai.request.model": "gpt-4o", "gen_ai.usage.input_tokens": "10"}),
            _span("b", minute=65, duration_ms=300, status=2, attrs={"gen_ai.request.model": "gpt-4o"}),
            _span("c", minute=70, duration_ms=200, trace_id="t2", name="embed",
                  attrs={"gen_ai.request.model": "gpt-4o-mini", "gen_ai.usage.output_tokens": "7"}),
        ]
    )

    stats = get_rollup("acme", start=START, end=START + timedelta(hours=2))

    assert stats.span_count == 3
    assert stats.error_count == 1
    assert stats.error_rate == pytest.approx(1 / 3)
    assert stats.trace_count == 2
    assert stats.tokens.total_tokens == 17
    assert stats.latency.p50 == pytest.approx(200.0)
    assert [(b.span_count, b.error_count) for b in stats.timeline] == [(1, 0), (2, 1)]
    assert [(m.key, m.span_count) for m in stats.by_model] == [("gpt-4o", 2), ("gpt-4o-mini", 1)]
    assert [(o.key, o.span_count) for o in stats.by_operation] == [("chat", 2), ("embed", 1)]


def test_daily_granularity_and_scopes():
    _ingest_spans([_span("a", minute=30, duration_ms=10, attrs={"user.id": "alice", "team_id": "red"})])
    _ingest_spans([_span("b", minute=60 * 25, duration_ms=10)], service="cursor")

    window = {"start": START, "end": START + timedelta(days=2), "granularity": "day"}

    assert [b.span_count for b in get_rollup("acme", **window).timeline] == [1, 1]
    assert get_rollup("acme", "vendor", "cursor", **window).span_count == 1
    assert get_rollup("acme", "user", "alice", **window).span_count == 1
    assert get_rollup("acme", "team", "red", **window).span_count == 1
    assert get_rollup("globex", **window).span_count == 0


def test_rollup_validates_arguments():
    with pytest.raises(ValueError):
        get_rollup("acme", start=START, end=START)
    with pytest.raises(ValueError):
        get_rollup("acme", "team", None, start=START, end=START + timedelta(hours=1))
    with pytest.raises(ValueError):
        bucket_starts(START, START + timedelta(days=400), Granularity.HOUR)


def test_rollup_honours_deadline():
    with pytest.raises(DeadlineExceededError):
        get_rollup("acme", start=START, end=START + timedelta(hours=1), timeout=0)


def test_profile_latency_uses_completed_spans():
    _ingest_spans([_span(f"s{i}", minute=i, duration_ms=(i + 1) * 10) for i in range(5)])

    stats = profile_latency("acme", "openai")

    assert stats.samples == 5
    assert stats.p50 == pytest.approx(30.0)


def _histogram(counts, bounds, total):
    return SimpleNamespace(metric_type="histogram", bucket_counts=counts, explicit_bounds=bounds, sum=total)


def test_histogram_percentiles_walk_cumulative_buckets():
    rows = [
        _histogram([5, 3, 2], [100.0, 500.0], 2500.0),
        _histogram([5, 3, 2], [100.0, 500.0], 2500.0),
        _histogram([1, 1], [50.0], 10.0),
    ]

    stats = histogram_percentiles(rows)

    assert stats.samples == 20
    assert stats.p50 == 100.0
    assert stats.p95 == 500.0
    assert stats.avg == pytest.approx(250.0)


def test_histogram_percentiles_empty():
    assert histogram_percentiles([]).samples == 0


def _ingest_metrics(metrics: list[dict]) -> None:
    IngestNormalizer().ingest(
        ACME,
        {
            "resourceMetrics": [
                {
                    "resource": {"attributes": _attrs({"service.name": "anthropic-sdk"})},
                    "scopeMetrics": [{"metrics": metrics}],
                }
            ]
        },
    )


def _point(value: int, *, day: int = 0, **attrs) -> dict:
    return {
        "timeUnixNano": str(START_NS + day * 86_400 * 1_000_000_000),
        "asInt": str(value),
        "attributes": _attrs({"gen_ai.request.model": "claude-sonnet-4-5", **attrs}),
    }


def test_metric_llm_stats_classifies_metric_names():
    _ingest_metrics(
        [
            {"name": "gen_ai.requests.total", "sum": {"dataPoints": [_point(4), _point(6, day=1)]}},
            {"name": "gen_ai.errors.total", "sum": {"dataPoints": [_point(1)]}},
            {
                "name": "gen_ai.client.token.usage",
                "sum": {
                    "dataPoints": [
                        _point(300, **{"gen_ai.token.type": "input"}),
                        _point(90, **{"gen_ai.token.type": "output"}),
                    ]
                },
            },
            {
                "name": "gen_ai.client.operation.duration",
                "histogram": {
                    "dataPoints": [
                        {
                            "timeUnixNano": str(START_NS),
                            "count": "10",
                            "sum": 1500,
                            "bucketCounts": ["6", "4"],
                            "explicitBounds": [200],
                            "attributes": _attrs({"gen_ai.request.model": "claude-sonnet-4-5"}),
                        }
                    ]
                },
            },
        ]
    )

    stats = metric_llm_stats("acme", "anthropic", start=START, end=START + timedelta(days=3))

    assert stats.total_requests == 10
    assert stats.total_errors == 1
    assert stats.total_input_tokens == 300
    assert stats.total_output_tokens == 90
    assert stats.latency.samples == 10
    assert stats.latency.p50 == 200.0
    (model,) = stats.models
    assert model.model == "claude-sonnet-4-5"
    assert model.avg_latency_ms == pytest.approx(150.0)
    assert [(d.day, d.request_count) for d in stats.daily] == [("2026-04-06", 4), ("2026-04-07", 6)]


def test_metric_llm_stats_unknown_profile():
    with pytest.raises(ToolProfileNotFoundError):
        metric_llm_stats("acme", "anthropic")
