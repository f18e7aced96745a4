"""On-demand rollups over stored spans and metrics.

Rollups read committed rows only and run concurrently with ingestion, so a
rollup computed while a batch is being ingested may undercount the most
recent spans of that batch. That is expected eventual consistency, not data
loss: re-running the rollup after the batch completes includes them.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import select

from usage_engine.core.config import load_config
from usage_engine.core.exceptions import DeadlineExceededError, ToolProfileNotFoundError
from usage_engine.governance.pricing import estimate_cost, to_money
from usage_engine.ingest.attributes import input_tokens, output_tokens
from usage_engine.ingest.vendors import model_of
from usage_engine.storage.database import as_utc, session_scope
from usage_engine.storage.models import TelemetryMetric, TelemetrySpan, ToolProfile

logger = logging.getLogger("usage_engine.rollup")

_ROW_CHUNK = 1000


class RollupScope(str, Enum):
    TENANT = "tenant"
    VENDOR = "vendor"
    TEAM = "team"
    USER = "user"


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"


_STEPS = {Granularity.HOUR: timedelta(hours=1), Granularity.DAY: timedelta(days=1)}


class LatencyStats(BaseModel):
    samples: int = 0
    p50: Optional[float] = None
    p95: Optional[float] = None
    p99: Optional[float] = None
    avg: Optional[float] = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class Breakdown(BaseModel):
    key: str
    span_count: int = 0
    error_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class TimelineBucket(BaseModel):
    start: datetime
    span_count: int = 0
    error_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class RollupStats(BaseModel):
    customer_id: str
    scope: RollupScope
    scope_id: Optional[str] = None
    start: datetime
    end: datetime
    granularity: Granularity
    span_count: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    trace_count: int = 0
    latency: LatencyStats = Field(default_factory=LatencyStats)
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost_usd: Decimal = Decimal("0")
    by_model: List[Breakdown] = Field(default_factory=list)
    by_operation: List[Breakdown] = Field(default_factory=list)
    timeline: List[TimelineBucket] = Field(default_factory=list)


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """Linear interpolation between closest ranks (``rank = p * (n - 1)``).

    Same definition as PostgreSQL ``percentile_cont``. ``sorted_values``
    must be ascending.
    """
    if not sorted_values:
        return None
    if not 0 <= p <= 1:
        raise ValueError("percentile must be within [0, 1]")
    rank = p * (len(sorted_values) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(sorted_values[lower])
    weight = rank - lower
    return float(sorted_values[lower]) + (float(sorted_values[upper]) - float(sorted_values[lower])) * weight


def latency_stats(durations: Iterable[float]) -> LatencyStats:
    ordered = sorted(float(d) for d in durations)
    if not ordered:
        return LatencyStats()
    return LatencyStats(
        samples=len(ordered),
        p50=percentile(ordered, 0.50),
        p95=percentile(ordered, 0.95),
        p99=percentile(ordered, 0.99),
        avg=sum(ordered) / len(ordered),
    )


def floor_bucket(value: datetime, granularity: Granularity) -> datetime:
    value = as_utc(value)
    if granularity == Granularity.DAY:
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, value.hour, tzinfo=timezone.utc)


def bucket_starts(start: datetime, end: datetime, granularity: Granularity) -> List[datetime]:
    """Every bucket that overlaps ``[start, end)``, aligned to the bucket floor."""
    step = _STEPS[granularity]
    limit = load_config().rollup.max_buckets
    buckets: List[datetime] = []
    cursor = floor_bucket(start, granularity)
    while cursor < end:
        buckets.append(cursor)
        if len(buckets) > limit:
            raise ValueError(f"window spans more than {limit} {granularity.value} buckets")
        cursor += step
    return buckets


class _Deadline:
    def __init__(self, timeout: float, operation: str) -> None:
        self._expires = time.monotonic() + timeout
        self._operation = operation

    def check(self) -> None:
        if time.monotonic() >= self._expires:
            raise DeadlineExceededError(self._operation)


@dataclass
class _Tally:
    span_count: int = 0
    error_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, is_error: bool, tokens_in: int, tokens_out: int) -> None:
        self.span_count += 1
        self.error_count += int(is_error)
        self.input_tokens += tokens_in
        self.output_tokens += tokens_out


def _top(tallies: Mapping[str, _Tally], top_n: int) -> List[Breakdown]:
    ranked = sorted(tallies.items(), key=lambda item: (-item[1].span_count, item[0]))[:top_n]
    return [
        Breakdown(
            key=key,
            span_count=t.span_count,
            error_count=t.error_count,
            input_tokens=t.input_tokens,
            output_tokens=t.output_tokens,
        )
        for key, t in ranked
    ]


def _resolve_window(
    start: datetime | None, end: datetime | None
) -> tuple[datetime, datetime]:
    end = as_utc(end) or datetime.now(timezone.utc)
    start = as_utc(start) or end - timedelta(hours=load_config().rollup.default_window_hours)
    if start >= end:
        raise ValueError("start must be before end")
    return start, end


def get_rollup(
    customer_id: str,
    scope: RollupScope | str = RollupScope.TENANT,
    scope_id: str | None = None,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    granularity: Granularity | str = Granularity.HOUR,
    top_n: int | None = None,
    timeout: float | None = None,
) -> RollupStats:
    """Aggregate the tenant's spans in ``[start, end)`` for one scope.

    ``scope`` is the whole tenant, or a vendor, team or user named by
    ``scope_id``. Empty windows return zero counts and zero-filled timeline
    buckets. Raises ``DeadlineExceededError`` when ``timeout`` elapses.
    """
    settings = load_config().rollup
    scope = RollupScope(scope)
    granularity = Granularity(granularity)
    if scope != RollupScope.TENANT and not scope_id:
        raise ValueError(f"scope_id is required for scope '{scope.value}'")
    start, end = _resolve_window(start, end)
    top_n = top_n or settings.top_n
    deadline = _Deadline(settings.timeout_seconds if timeout is None else timeout, "rollup")
    buckets = {bucket: _Tally() for bucket in bucket_starts(start, end, granularity)}

    stmt = (
        select(
            TelemetrySpan.trace_id,
            TelemetrySpan.span_name,
            TelemetrySpan.start_time,
            TelemetrySpan.duration_ms,
            TelemetrySpan.status_code,
            TelemetrySpan.span_attributes,
        )
        .where(TelemetrySpan.customer_id == customer_id)
        .where(TelemetrySpan.start_time >= start)
        .where(TelemetrySpan.start_time < end)
    )
    if scope == RollupScope.VENDOR:
        stmt = stmt.where(TelemetrySpan.vendor == scope_id)
    elif scope == RollupScope.TEAM:
        stmt = stmt.where(TelemetrySpan.team_id == scope_id)
    elif scope == RollupScope.USER:
        stmt = stmt.where(TelemetrySpan.user_id == scope_id)

    totals = _Tally()
    durations: List[float] = []
    trace_ids: set[str] = set()
    by_model: Dict[str, _Tally] = defaultdict(_Tally)
    by_operation: Dict[str, _Tally] = defaultdict(_Tally)
    cost = Decimal("0")
    pricing = load_config().pricing

    with session_scope() as session:
        result = session.execute(stmt.execution_options(yield_per=_ROW_CHUNK))
        for position, row in enumerate(result):
            if position % _ROW_CHUNK == 0:
                deadline.check()
            attrs = row.span_attributes or {}
            is_error = row.status_code == "ERROR"
            tokens_in = input_tokens(attrs)
            tokens_out = output_tokens(attrs)
            model = model_of(attrs)

            totals.add(is_error, tokens_in, tokens_out)
            buckets[floor_bucket(row.start_time, granularity)].add(is_error, tokens_in, tokens_out)
            by_operation[row.span_name].add(is_error, tokens_in, tokens_out)
            if model:
                by_model[model].add(is_error, tokens_in, tokens_out)
                cost += estimate_cost(model, tokens_in, tokens_out, pricing=pricing)
            if row.duration_ms is not None:
                durations.append(row.duration_ms)
            trace_ids.add(row.trace_id)
    deadline.check()

    return RollupStats(
        customer_id=customer_id,
        scope=scope,
        scope_id=scope_id,
        start=start,
        end=end,
        granularity=granularity,
        span_count=totals.span_count,
        error_count=totals.error_count,
        error_rate=(totals.error_count / totals.span_count) if totals.span_count else 0.0,
        trace_count=len(trace_ids),
        latency=latency_stats(durations),
        tokens=TokenUsage(
            input_tokens=totals.input_tokens,
            output_tokens=totals.output_tokens,
            total_tokens=totals.input_tokens + totals.output_tokens,
        ),
        estimated_cost_usd=to_money(cost),
        by_model=_top(by_model, top_n),
        by_operation=_top(by_operation, top_n),
        timeline=[
            TimelineBucket(
                start=bucket,
                span_count=t.span_count,
                error_count=t.error_count,
                input_tokens=t.input_tokens,
                output_tokens=t.output_tokens,
            )
            for bucket, t in sorted(buckets.items())
        ],
    )


# -- metric-derived LLM statistics ------------------------------------------

REQUEST_COUNT_RE = re.compile(
    r"(gen_ai\.)?(request|requests)\.(count|total)|request_count|requests_total", re.IGNORECASE
)
ERROR_COUNT_RE = re.compile(
    r"(gen_ai\.)?(error|errors|failure|failed)\.(count|total)|error_count|errors_total", re.IGNORECASE
)
LATENCY_RE = re.compile(r"latency|duration|response\.time", re.IGNORECASE)
TOKEN_INPUT_RE = re.compile(
    r"(gen_ai\.)?(usage\.)?input_tokens|token\.input|tokens\.input|input_tokens_total", re.IGNORECASE
)
TOKEN_OUTPUT_RE = re.compile(
    r"(gen_ai\.)?(usage\.)?output_tokens|token\.output|tokens\.output|output_tokens_total", re.IGNORECASE
)


def token_metric_type(name: str, attrs: Mapping[str, str]) -> Optional[str]:
    token_type = (attrs.get("gen_ai.token.type") or attrs.get("token.type") or "").lower()
    if token_type in ("input", "prompt"):
        return "input"
    if token_type in ("output", "completion"):
        return "output"
    if TOKEN_INPUT_RE.search(name):
        return "input"
    if TOKEN_OUTPUT_RE.search(name):
        return "output"
    return None


def metric_value(row: TelemetryMetric) -> Optional[float]:
    """Scalar reading of a data point; distributions contribute their sum."""
    if row.value_double is not None:
        return float(row.value_double)
    if row.value_int is not None:
        return float(row.value_int)
    if row.metric_type != "gauge" and row.sum is not None:
        return float(row.sum)
    return None


def histogram_percentiles(rows: Iterable[TelemetryMetric]) -> LatencyStats:
    """Merge compatible explicit-bucket histograms and walk the cumulative counts.

    A percentile resolves to the upper bound of the first bucket whose
    cumulative count reaches ``p * total``; the overflow bucket reports the
    last explicit bound. Rows whose bounds differ from the first are skipped.
    """
    bounds: Optional[List[float]] = None
    merged: Optional[List[int]] = None
    total_count = 0
    total_sum = 0.0
    for row in rows:
        if row.metric_type != "histogram" or not row.explicit_bounds or not row.bucket_counts:
            continue
        row_bounds = [float(b) for b in row.explicit_bounds]
        row_counts = [int(c) for c in row.bucket_counts]
        if bounds is None:
            bounds = row_bounds
            merged = [0] * len(row_counts)
        if row_bounds != bounds or len(row_counts) != len(merged):
            continue
        merged = [a + b for a, b in zip(merged, row_counts)]
        total_count += sum(row_counts)
        if row.sum is not None:
            total_sum += float(row.sum)

    if bounds is None or merged is None or total_count == 0:
        return LatencyStats()

    def walk(p: float) -> float:
        target = total_count * p
        cumulative = 0
        for i, count in enumerate(merged):
            cumulative += count
            if cumulative >= target:
                return bounds[i] if i < len(bounds) else bounds[-1]
        return bounds[-1]

    return LatencyStats(
        samples=total_count,
        p50=walk(0.50),
        p95=walk(0.95),
        p99=walk(0.99),
        avg=total_sum / total_count,
    )


class ModelUsage(BaseModel):
    model: str
    request_count: int = 0
    error_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    avg_latency_ms: Optional[float] = None
    latency: LatencyStats = Field(default_factory=LatencyStats)
    last_used: Optional[datetime] = None


class DailyUsage(BaseModel):
    day: str
    request_count: int = 0
    error_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class LlmMetricStats(BaseModel):
    vendor: str
    start: datetime
    end: datetime
    total_requests: int = 0
    total_errors: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    latency: LatencyStats = Field(default_factory=LatencyStats)
    models: List[ModelUsage] = Field(default_factory=list)
    daily: List[DailyUsage] = Field(default_factory=list)


@dataclass
class _ModelAccumulator:
    requests: float = 0.0
    errors: float = 0.0
    input_tokens: float = 0.0
    output_tokens: float = 0.0
    latency_sum: float = 0.0
    latency_count: int = 0
    histograms: List[TelemetryMetric] = field(default_factory=list)
    last_used: Optional[datetime] = None


def metric_llm_stats(
    customer_id: str,
    vendor: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    timeout: float | None = None,
) -> LlmMetricStats:
    """Request, error, token and latency statistics from a profile's OTLP metrics.

    Defaults to the last 30 days. Metric names are classified by pattern;
    token direction honours ``gen_ai.token.type`` before the metric name.
    """
    settings = load_config().rollup
    end = as_utc(end) or datetime.now(timezone.utc)
    start = as_utc(start) or end - timedelta(days=30)
    deadline = _Deadline(settings.timeout_seconds if timeout is None else timeout, "metric_llm_stats")

    models: Dict[str, _ModelAccumulator] = defaultdict(_ModelAccumulator)
    daily: Dict[str, DailyUsage] = {}
    latency_rows: List[TelemetryMetric] = []

    with session_scope() as session:
        profile_id = session.scalar(
            select(ToolProfile.id)
            .where(ToolProfile.customer_id == customer_id)
            .where(ToolProfile.vendor == vendor)
        )
        if profile_id is None:
            raise ToolProfileNotFoundError(customer_id, vendor)
        rows = session.scalars(
            select(TelemetryMetric)
            .where(TelemetryMetric.customer_id == customer_id)
            .where(TelemetryMetric.tool_profile_id == profile_id)
            .where(TelemetryMetric.time >= start)
            .where(TelemetryMetric.time < end)
            .order_by(TelemetryMetric.time.asc())
        ).all()

    for position, row in enumerate(rows):
        if position % _ROW_CHUNK == 0:
            deadline.check()
        attrs = row.attributes or {}
        model = model_of(attrs) or "unknown"
        entry = models[model]
        value = metric_value(row)
        timestamp = as_utc(row.time)
        day = daily.setdefault(timestamp.date().isoformat(), DailyUsage(day=timestamp.date().isoformat()))
        name = row.metric_name or ""

        if REQUEST_COUNT_RE.search(name):
            requests = float(row.count) if row.metric_type == "histogram" and row.count is not None else value
            if requests is not None:
                entry.requests += requests
                day.request_count += round(requests)
        if value is not None and ERROR_COUNT_RE.search(name):
            entry.errors += value
            day.error_count += round(value)
        token_type = token_metric_type(name, attrs)
        if value is not None and token_type == "input":
            entry.input_tokens += value
            day.input_tokens += round(value)
        elif value is not None and token_type == "output":
            entry.output_tokens += value
            day.output_tokens += round(value)
        if token_type is None and LATENCY_RE.search(name):
            if row.metric_type == "histogram":
                latency_rows.append(row)
                entry.histograms.append(row)
            elif value is not None:
                entry.latency_sum += value
                entry.latency_count += 1
        entry.last_used = timestamp

    usage = []
    for model, entry in sorted(models.items()):
        model_latency = histogram_percentiles(entry.histograms)
        avg_latency = model_latency.avg
        if avg_latency is None and entry.latency_count:
            avg_latency = entry.latency_sum / entry.latency_count
        usage.append(
            ModelUsage(
                model=model,
                request_count=round(entry.requests),
                error_count=round(entry.errors),
                total_input_tokens=round(entry.input_tokens),
                total_output_tokens=round(entry.output_tokens),
                avg_latency_ms=avg_latency,
                latency=model_latency,
                last_used=entry.last_used,
            )
        )

    return LlmMetricStats(
        vendor=vendor,
        start=start,
        end=end,
        total_requests=sum(m.request_count for m in usage),
        total_errors=sum(m.error_count for m in usage),
        total_input_tokens=sum(m.total_input_tokens for m in usage),
        total_output_tokens=sum(m.total_output_tokens for m in usage),
        latency=histogram_percentiles(latency_rows),
        models=usage,
        daily=[daily[key] for key in sorted(daily)],
    )


def profile_latency(customer_id: str, vendor: str, *, timeout: float | None = None) -> LatencyStats:
    """Latency percentiles over every completed span of one tool profile."""
    settings = load_config().rollup
    deadline = _Deadline(settings.timeout_seconds if timeout is None else timeout, "profile_latency")
    with session_scope() as session:
        durations = session.scalars(
            select(TelemetrySpan.duration_ms)
            .where(TelemetrySpan.customer_id == customer_id)
            .where(TelemetrySpan.vendor == vendor)
            .where(TelemetrySpan.duration_ms.is_not(None))
        ).all()
    deadline.check()
    return latency_stats(durations)


__all__ = [
    "Granularity",
    "LatencyStats",
    "LlmMetricStats",
    "RollupScope",
    "RollupStats",
    "bucket_starts",
    "get_rollup",
    "histogram_percentiles",
    "latency_stats",
    "metric_llm_stats",
    "percentile",
    "profile_latency",
]
