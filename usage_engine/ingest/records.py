"""Canonical record types produced by the ingestion normalizer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

KeyScope = Literal["user", "team", "customer"]
SignalType = Literal["span", "metric", "log"]


@dataclass(frozen=True)
class TenantCredential:
    """Identity resolved by the upstream auth layer for one ingest call."""

    customer_id: Optional[str]
    team_id: Optional[str] = None
    user_id: Optional[str] = None
    key_hash: Optional[str] = None
    key_scope: Optional[KeyScope] = None

    @property
    def is_customer_wide(self) -> bool:
        if self.key_scope is not None:
            return self.key_scope == "customer"
        return self.team_id is None and self.user_id is None


@dataclass
class Attribution:
    customer_id: str
    team_id: Optional[str]
    user_id: Optional[str]


@dataclass
class CanonicalSpan:
    customer_id: str
    team_id: Optional[str]
    user_id: Optional[str]
    trace_id: str
    span_id: str
    parent_span_id: Optional[str]
    span_name: str
    span_kind: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_ms: Optional[int]
    status_code: str
    status_message: Optional[str]
    vendor: str
    display_name: str
    vendor_category: Optional[str]
    is_llm: bool
    service_name: Optional[str]
    span_attributes: Dict[str, str] = field(default_factory=dict)
    resource_attributes: Dict[str, str] = field(default_factory=dict)
    signal_type: str = "trace"


@dataclass
class CanonicalMetric:
    customer_id: str
    team_id: Optional[str]
    user_id: Optional[str]
    vendor: str
    display_name: str
    vendor_category: Optional[str]
    service_name: Optional[str]
    metric_name: str
    metric_type: str
    unit: Optional[str]
    description: Optional[str]
    attributes: Dict[str, str]
    resource_attributes: Dict[str, str]
    time: datetime
    start_time: Optional[datetime] = None
    value_double: Optional[float] = None
    value_int: Optional[int] = None
    count: Optional[int] = None
    sum: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    bucket_counts: Optional[List[int]] = None
    explicit_bounds: Optional[List[float]] = None
    quantile_values: Optional[List[Dict[str, float]]] = None

    @property
    def value(self) -> Optional[float]:
        if self.value_double is not None:
            return self.value_double
        if self.value_int is not None:
            return float(self.value_int)
        return self.sum


@dataclass
class CanonicalLog:
    customer_id: str
    team_id: Optional[str]
    user_id: Optional[str]
    vendor: str
    display_name: str
    vendor_category: Optional[str]
    service_name: Optional[str]
    trace_id: Optional[str]
    span_id: Optional[str]
    severity: str
    body: Optional[str]
    timestamp: datetime
    log_attributes: Dict[str, str]
    resource_attributes: Dict[str, str]
    # Span synthesized from trace context carried by the log record.
    span: Optional[CanonicalSpan] = None


class Rejection(BaseModel):
    index: int
    signal: SignalType
    reason: str


class IngestResult(BaseModel):
    """Partial-success report for one ingest call.

    ``accepted_indices`` and ``unprocessed_indices`` use the batch-wide record
    index: spans first, then metric data points, then log records, each in
    payload order.
    """

    accepted_count: int = 0
    accepted_indices: List[int] = Field(default_factory=list)
    rejected: List[Rejection] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    cancelled: bool = False
    unprocessed_indices: List[int] = Field(default_factory=list)

    def accept(self, index: int) -> None:
        self.accepted_count += 1
        self.accepted_indices.append(index)

    def reject(self, index: int, signal: SignalType, reason: str) -> None:
        self.rejected.append(Rejection(index=index, signal=signal, reason=reason))

    @property
    def complete(self) -> bool:
        return not self.cancelled and not self.unprocessed_indices

    def summary(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted_count,
            "rejected": len(self.rejected),
            "unprocessed": len(self.unprocessed_indices),
        }


__all__ = [
    "Attribution",
    "CanonicalLog",
    "CanonicalMetric",
    "CanonicalSpan",
    "IngestResult",
    "KeyScope",
    "Rejection",
    "TenantCredential",
]
