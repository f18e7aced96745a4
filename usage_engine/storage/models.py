"""ORM models for telemetry records, tool profiles and key governance."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .database import Base

MONEY = Numeric(14, 6)


class TelemetrySpan(Base):
    __tablename__ = "telemetry_spans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False)
    team_id = Column(String(128))
    user_id = Column(String(128))
    tool_profile_id = Column(Integer, ForeignKey("tool_profiles.id", ondelete="SET NULL"))
    trace_id = Column(String(128), nullable=False)
    span_id = Column(String(128), nullable=False)
    parent_span_id = Column(String(128))
    span_name = Column(String(255), nullable=False)
    span_kind = Column(String(16))
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    status_code = Column(String(8), nullable=False, default="UNSET")
    status_message = Column(Text)
    vendor = Column(String(100), nullable=False)
    service_name = Column(String(255))
    span_attributes = Column(JSON, nullable=False, default=dict)
    resource_attributes = Column(JSON, nullable=False, default=dict)
    signal_type = Column(String(16), nullable=False, default="trace")
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("customer_id", "trace_id", "span_id", name="uq_telemetry_spans_identity"),
        Index("ix_telemetry_spans_customer_vendor_start", "customer_id", "vendor", "start_time"),
        Index("ix_telemetry_spans_customer_team_start", "customer_id", "team_id", "start_time"),
        Index("ix_telemetry_spans_customer_start", "customer_id", "start_time"),
    )


class TelemetryMetric(Base):
    __tablename__ = "telemetry_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False)
    team_id = Column(String(128))
    user_id = Column(String(128))
    tool_profile_id = Column(Integer, ForeignKey("tool_profiles.id", ondelete="SET NULL"))
    vendor = Column(String(100), nullable=False)
    service_name = Column(String(255))
    metric_name = Column(String(255), nullable=False)
    metric_type = Column(String(32), nullable=False)
    unit = Column(String(64))
    description = Column(Text)
    attributes = Column(JSON, nullable=False, default=dict)
    value_double = Column(Float)
    value_int = Column(BigInteger)
    count = Column(BigInteger)
    sum = Column(Float)
    min = Column(Float)
    max = Column(Float)
    bucket_counts = Column(JSON)
    explicit_bounds = Column(JSON)
    quantile_values = Column(JSON)
    start_time = Column(DateTime(timezone=True))
    time = Column(DateTime(timezone=True), nullable=False)
    fingerprint = Column(String(64), nullable=False)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("customer_id", "fingerprint", name="uq_telemetry_metrics_fingerprint"),
        Index("ix_telemetry_metrics_customer_vendor_time", "customer_id", "vendor", "time"),
        Index("ix_telemetry_metrics_name", "metric_name"),
    )

    @property
    def value(self) -> float | None:
        if self.value_double is not None:
            return float(self.value_double)
        if self.value_int is not None:
            return float(self.value_int)
        if self.sum is not None:
            return float(self.sum)
        return None


class TelemetryLog(Base):
    __tablename__ = "telemetry_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False)
    team_id = Column(String(128))
    user_id = Column(String(128))
    tool_profile_id = Column(Integer, ForeignKey("tool_profiles.id", ondelete="SET NULL"))
    vendor = Column(String(100), nullable=False)
    service_name = Column(String(255))
    trace_id = Column(String(128))
    span_id = Column(String(128))
    severity = Column(String(16), nullable=False)
    body = Column(Text)
    log_attributes = Column(JSON, nullable=False, default=dict)
    resource_attributes = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    fingerprint = Column(String(64), nullable=False)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("customer_id", "fingerprint", name="uq_telemetry_logs_fingerprint"),
        Index("ix_telemetry_logs_customer_vendor_ts", "customer_id", "vendor", "timestamp"),
    )


class ToolProfile(Base):
    __tablename__ = "tool_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False)
    vendor = Column(String(100), nullable=False)
    display_name = Column(String(255), nullable=False)
    vendor_category = Column(String(32))
    total_spans = Column(Integer, nullable=False, default=0, server_default="0")
    total_traces = Column(Integer, nullable=False, default=0, server_default="0")
    total_errors = Column(Integer, nullable=False, default=0, server_default="0")
    first_seen_at = Column(DateTime(timezone=True))
    last_seen_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("customer_id", "vendor", name="uq_tool_profiles_customer_vendor"),
    )


class ToolProfileTrace(Base):
    """Exact distinct-trace index backing ``ToolProfile.total_traces``."""

    __tablename__ = "tool_profile_traces"

    tool_profile_id = Column(
        Integer, ForeignKey("tool_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    trace_id = Column(String(128), primary_key=True)


class GatewayKey(Base):
    __tablename__ = "gateway_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False)
    user_id = Column(String(128))
    team_id = Column(String(128))
    key_hash = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    budget_usd = Column(MONEY)
    spend_usd = Column(MONEY, nullable=False, default=Decimal("0"), server_default="0")
    budget_reset = Column(String(16))
    spend_reset_at = Column(DateTime(timezone=True))
    allowed_models = Column(JSON)
    disabled = Column(Boolean, nullable=False, default=False, server_default="0")
    created_by_user_id = Column(String(128))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (team_id IS NULL)", name="ck_gateway_keys_single_scope"
        ),
        Index("ix_gateway_keys_customer", "customer_id"),
    )


class Guardrail(Base):
    __tablename__ = "guardrails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(128), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    limit_usd = Column(MONEY)
    reset_interval = Column(String(16))
    allowed_models = Column(JSON)
    allowed_providers = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("customer_id", "name", name="uq_guardrails_customer_name"),
    )


class GuardrailKeyAssignment(Base):
    __tablename__ = "guardrail_key_assignments"

    guardrail_id = Column(Integer, ForeignKey("guardrails.id", ondelete="CASCADE"), primary_key=True)
    key_id = Column(Integer, ForeignKey("gateway_keys.id", ondelete="CASCADE"), primary_key=True)
    assigned_by = Column(String(128))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BudgetReservation(Base):
    __tablename__ = "budget_reservations"

    id = Column(String(32), primary_key=True)
    key_id = Column(Integer, ForeignKey("gateway_keys.id", ondelete="CASCADE"), nullable=False)
    model = Column(String(255))
    estimated_usd = Column(MONEY, nullable=False)
    actual_usd = Column(MONEY)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    settled_at = Column(DateTime(timezone=True))


class EngineEvent(Base):
    __tablename__ = "engine_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    level = Column(String(16), nullable=False)
    kind = Column(String(64), nullable=False)
    request_id = Column(String(64))
    customer_id = Column(String(128))
    key_hash = Column(String(64))
    vendor = Column(String(100))
    model = Column(String(255))
    error_code = Column(String(128))
    message = Column(String(512))
    meta = Column(Text)

    __table_args__ = (
        Index("ix_engine_events_ts", "ts"),
        Index("ix_engine_events_kind_ts", "kind", "ts"),
    )
