"""OTLP JSON ingestion: parse, attribute, canonicalize and persist.

Every span, metric data point and log record is an independent unit of
work committed in its own transaction. A malformed record is rejected on its
own; a store outage stops the batch but leaves earlier commits in place. The
tool profile counters are folded in the same transaction as the span write,
so profiles are never behind the span table.
"""

from __future__ import annotations

import functools
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from usage_engine.core.config import AppConfig, load_config
from usage_engine.core.exceptions import (
    AttributionError,
    RecordRejectedError,
    RecordValidationError,
    StoreUnavailableError,
)
from usage_engine.governance.budgets import charge_usage
from usage_engine.governance.pricing import estimate_cost
from usage_engine.storage.database import session_scope
from usage_engine.storage.profiles import ensure_tool_profile, touch_tool_profile
from usage_engine.storage.spans import insert_log, upsert_metric, upsert_span
from usage_engine.telemetry.events import record_event

from .attributes import any_value_to_native, flatten_attributes, input_tokens, output_tokens
from .records import (
    Attribution,
    CanonicalLog,
    CanonicalMetric,
    CanonicalSpan,
    IngestResult,
    SignalType,
    TenantCredential,
)
from .vendors import VendorCanonicalizer, VendorInfo, model_of

logger = logging.getLogger("usage_engine.ingest")

USER_ATTR_KEYS = (
    "user.id",
    "user_id",
    "trace.metadata.user.id",
    "trace.metadata.user_id",
    "gen_ai.user",
    "enduser.id",
    "user",
)
TEAM_ATTR_KEYS = (
    "team.id",
    "team_id",
    "trace.metadata.team.id",
    "trace.metadata.team_id",
)

SPAN_KINDS = ("UNSPECIFIED", "INTERNAL", "SERVER", "CLIENT", "PRODUCER", "CONSUMER")
METRIC_KINDS = {
    "sum": "sum",
    "gauge": "gauge",
    "histogram": "histogram",
    "exponentialHistogram": "exponential_histogram",
    "summary": "summary",
}
# OTLP severity numbers come in bands of four per level.
SEVERITY_BANDS = ((21, "FATAL"), (17, "ERROR"), (13, "WARN"), (9, "INFO"), (5, "DEBUG"), (1, "TRACE"))
ERROR_SEVERITIES = {"ERROR", "FATAL"}
LOG_SPAN_NAME_KEYS = ("name", "operation", "http.method")
LOG_SPAN_NAME_LIMIT = 200
SPAN_NAME_LIMIT = 255

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# Last instant a datetime can hold.
_MAX_NANOS = int((datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc) - _EPOCH).total_seconds()) * 1_000_000_000

# Errors raised by malformed record content that slips past the shape checks.
MALFORMED_RECORD_ERRORS = (TypeError, ValueError, AttributeError, OverflowError)

Record = Union[CanonicalSpan, CanonicalMetric, CanonicalLog]


@dataclass
class WorkItem:
    index: int
    signal: SignalType
    build: Callable[[], Record]


def _first_value(keys: Iterable[str], *maps: Mapping[str, str]) -> Optional[str]:
    for key in keys:
        for attrs in maps:
            value = attrs.get(key)
            if value:
                return value
    return None


def resolve_attribution(credential: TenantCredential, *attr_maps: Mapping[str, str]) -> Attribution:
    """Attribute a record to customer, team and user.

    The customer always comes from the credential. The team comes from the
    credential, or from trace metadata when the credential is customer-wide.
    The user comes from a user-scoped credential, else from OTLP user fields.
    """
    if not credential.customer_id:
        raise AttributionError("customer_id could not be resolved")
    if credential.team_id:
        team_id = credential.team_id
    elif credential.is_customer_wide:
        team_id = _first_value(TEAM_ATTR_KEYS, *attr_maps)
    else:
        team_id = None
    user_id = credential.user_id or _first_value(USER_ATTR_KEYS, *attr_maps)
    return Attribution(customer_id=credential.customer_id, team_id=team_id, user_id=user_id)


def _identifier(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _nanos(value: Any, field: str) -> Optional[int]:
    if value in (None, "", 0, "0"):
        return None
    try:
        nanos = int(str(value))
    except ValueError as exc:
        raise RecordValidationError(f"invalid {field}") from exc
    if nanos < 0 or nanos > _MAX_NANOS:
        raise RecordValidationError(f"invalid {field}")
    return nanos


def nanos_to_datetime(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def _span_kind(value: Any) -> str:
    if isinstance(value, int) and 0 <= value < len(SPAN_KINDS):
        return SPAN_KINDS[value]
    if isinstance(value, str):
        text = value.upper().removeprefix("SPAN_KIND_")
        if text.isdigit():
            return _span_kind(int(text))
        if text in SPAN_KINDS:
            return text
    return "UNSPECIFIED"


def _status_code(status: Any) -> str:
    code = status.get("code") if isinstance(status, Mapping) else None
    if isinstance(code, str):
        code = code.upper().removeprefix("STATUS_CODE_")
        code = {"OK": 1, "ERROR": 2}.get(code, code)
        if isinstance(code, str) and code.isdigit():
            code = int(code)
    if code == 2:
        return "ERROR"
    if code == 1:
        return "OK"
    return "UNSET"


def _severity(record: Mapping[str, Any]) -> str:
    text = record.get("severityText")
    if isinstance(text, str) and text.strip():
        return text.strip().upper()[:16]
    number = record.get("severityNumber")
    if isinstance(number, str) and number.isdigit():
        number = int(number)
    if isinstance(number, int):
        for floor, name in SEVERITY_BANDS:
            if number >= floor:
                return name
    return "UNSPECIFIED"


def _float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise RecordValidationError(f"invalid numeric value {value!r}") from exc


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value))
    except ValueError as exc:
        raise RecordValidationError(f"invalid integer value {value!r}") from exc


def _children(container: Mapping[str, Any], *keys: str) -> List[Any]:
    for key in keys:
        value = container.get(key)
        if isinstance(value, list):
            return value
    return []


def _resource_loader(container: Mapping[str, Any]) -> Callable[[], Dict[str, str]]:
    """Flatten a resource's attributes once, on first use by one of its records."""

    @functools.lru_cache(maxsize=None)
    def load() -> Dict[str, str]:
        resource = container.get("resource")
        if resource is None:
            return {}
        if not isinstance(resource, Mapping):
            raise RecordValidationError("resource is not an object")
        return flatten_attributes(resource.get("attributes"))

    return load


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _service_name(resource_attrs: Mapping[str, str], attrs: Mapping[str, str]) -> Optional[str]:
    return resource_attrs.get("service.name") or attrs.get("service.name") or None


class IngestNormalizer:
    """Turns OTLP JSON batches into canonical, tenant-scoped records."""

    def __init__(
        self,
        config: AppConfig | None = None,
        canonicalizer: VendorCanonicalizer | None = None,
    ) -> None:
        self._config = config or load_config()
        self._canonicalizer = canonicalizer or VendorCanonicalizer(self._config.vendors)

    # -- parsing ---------------------------------------------------------

    def iter_work(self, credential: TenantCredential, batch: Mapping[str, Any]) -> Iterator[WorkItem]:
        """Enumerate records: spans, then metric data points, then logs."""
        index = 0
        for resource_spans in _children(batch, "resourceSpans"):
            if not isinstance(resource_spans, Mapping):
                continue
            resource = _resource_loader(resource_spans)
            for scope in _children(resource_spans, "scopeSpans", "instrumentationLibrarySpans"):
                if not isinstance(scope, Mapping):
                    continue
                for raw in _children(scope, "spans"):
                    yield WorkItem(index, "span", self._span_builder(credential, resource, raw))
                    index += 1

        for resource_metrics in _children(batch, "resourceMetrics"):
            if not isinstance(resource_metrics, Mapping):
                continue
            resource = _resource_loader(resource_metrics)
            for scope in _children(resource_metrics, "scopeMetrics", "instrumentationLibraryMetrics"):
                if not isinstance(scope, Mapping):
                    continue
                for metric in _children(scope, "metrics"):
                    for build in self._metric_builders(credential, resource, metric):
                        yield WorkItem(index, "metric", build)
                        index += 1

        for resource_logs in _children(batch, "resourceLogs"):
            if not isinstance(resource_logs, Mapping):
                continue
            resource = _resource_loader(resource_logs)
            for scope in _children(resource_logs, "scopeLogs", "instrumentationLibraryLogs"):
                if not isinstance(scope, Mapping):
                    continue
                for raw in _children(scope, "logRecords"):
                    yield WorkItem(index, "log", self._log_builder(credential, resource, raw))
                    index += 1

    def _vendor(self, resource_attrs: Mapping[str, str], attrs: Mapping[str, str]) -> VendorInfo:
        return self._canonicalizer.canonicalize(resource_attrs, attrs, _service_name(resource_attrs, attrs))

    def _span_builder(
        self, credential: TenantCredential, resource: Callable[[], Dict[str, str]], raw: Any
    ) -> Callable[[], CanonicalSpan]:
        return lambda: self.build_span(credential, resource(), raw)

    def build_span(
        self, credential: TenantCredential, resource_attrs: Mapping[str, str], raw: Any
    ) -> CanonicalSpan:
        if not isinstance(raw, Mapping):
            raise RecordValidationError("span is not an object")
        trace_id = _identifier(raw.get("traceId"))
        span_id = _identifier(raw.get("spanId"))
        if not trace_id or not span_id:
            raise RecordValidationError("missing trace_id or span_id")

        attrs = flatten_attributes(raw.get("attributes"))
        attribution = resolve_attribution(credential, attrs, resource_attrs)

        start_ns = _nanos(raw.get("startTimeUnixNano"), "startTimeUnixNano")
        end_ns = _nanos(raw.get("endTimeUnixNano"), "endTimeUnixNano")
        duration_ms: Optional[int] = None
        if start_ns is not None and end_ns is not None and end_ns >= start_ns:
            duration_ms = round((end_ns - start_ns) / 1_000_000)
        if start_ns is not None:
            start_time = nanos_to_datetime(start_ns)
        elif end_ns is not None:
            start_time = nanos_to_datetime(end_ns)
        else:
            start_time = datetime.now(timezone.utc)

        name = raw.get("name")
        if name is not None and not isinstance(name, str):
            raise RecordValidationError("span name is not a string")
        status = raw.get("status")
        if status is not None and not isinstance(status, Mapping):
            raise RecordValidationError("span status is not an object")
        vendor = self._vendor(resource_attrs, attrs)
        return CanonicalSpan(
            customer_id=attribution.customer_id,
            team_id=attribution.team_id,
            user_id=attribution.user_id,
            trace_id=trace_id,
            span_id=span_id,
            parent_span_id=_identifier(raw.get("parentSpanId")),
            span_name=(name or "unknown")[:SPAN_NAME_LIMIT],
            span_kind=_span_kind(raw.get("kind")),
            start_time=start_time,
            end_time=nanos_to_datetime(end_ns) if end_ns is not None else None,
            duration_ms=duration_ms,
            status_code=_status_code(status),
            status_message=_text(status.get("message")) if status else None,
            vendor=vendor.vendor,
            display_name=vendor.display_name,
            vendor_category=vendor.category,
            is_llm=vendor.is_llm,
            service_name=_service_name(resource_attrs, attrs),
            span_attributes=attrs,
            resource_attributes=dict(resource_attrs),
        )

    def _metric_builders(
        self, credential: TenantCredential, resource: Callable[[], Dict[str, str]], metric: Any
    ) -> List[Callable[[], CanonicalMetric]]:
        if not isinstance(metric, Mapping):
            return [self._reject("metric is not an object")]
        kind = next((key for key in METRIC_KINDS if isinstance(metric.get(key), Mapping)), None)
        if kind is None:
            return [self._reject("unsupported metric type")]
        points = _children(metric[kind], "dataPoints")
        return [
            (lambda point=point: self.build_metric(credential, resource(), metric, kind, point))
            for point in points
        ]

    @staticmethod
    def _reject(reason: str) -> Callable[[], Any]:
        def build() -> Any:
            raise RecordValidationError(reason)

        return build

    def build_metric(
        self,
        credential: TenantCredential,
        resource_attrs: Mapping[str, str],
        metric: Mapping[str, Any],
        kind: str,
        point: Any,
    ) -> CanonicalMetric:
        name = metric.get("name")
        if not isinstance(name, str) or not name.strip():
            raise RecordValidationError("missing metric name")
        if not isinstance(point, Mapping):
            raise RecordValidationError("data point is not an object")
        time_ns = _nanos(point.get("timeUnixNano"), "timeUnixNano")
        if time_ns is None:
            raise RecordValidationError("missing timeUnixNano")
        start_ns = _nanos(point.get("startTimeUnixNano"), "startTimeUnixNano")

        attrs = flatten_attributes(point.get("attributes"))
        attribution = resolve_attribution(credential, attrs, resource_attrs)
        vendor = self._vendor(resource_attrs, attrs)

        record = CanonicalMetric(
            customer_id=attribution.customer_id,
            team_id=attribution.team_id,
            user_id=attribution.user_id,
            vendor=vendor.vendor,
            display_name=vendor.display_name,
            vendor_category=vendor.category,
            service_name=_service_name(resource_attrs, attrs),
            metric_name=name.strip(),
            metric_type=METRIC_KINDS[kind],
            unit=_text(metric.get("unit")),
            description=_text(metric.get("description")),
            attributes=attrs,
            resource_attributes=dict(resource_attrs),
            time=nanos_to_datetime(time_ns),
            start_time=nanos_to_datetime(start_ns) if start_ns is not None else None,
        )
        if kind in ("sum", "gauge"):
            record.value_double = _float(point.get("asDouble"))
            record.value_int = _int(point.get("asInt"))
        else:
            record.count = _int(point.get("count"))
            record.sum = _float(point.get("sum"))
        if kind in ("histogram", "exponentialHistogram"):
            record.min = _float(point.get("min"))
            record.max = _float(point.get("max"))
        if kind == "histogram":
            record.bucket_counts = [_int(count) or 0 for count in _children(point, "bucketCounts")]
            record.explicit_bounds = [_float(bound) for bound in _children(point, "explicitBounds")]
        if kind == "summary":
            record.quantile_values = [
                {"quantile": _float(q.get("quantile")) or 0.0, "value": _float(q.get("value")) or 0.0}
                for q in _children(point, "quantileValues")
                if isinstance(q, Mapping)
            ]
        return record

    def _log_builder(
        self, credential: TenantCredential, resource: Callable[[], Dict[str, str]], raw: Any
    ) -> Callable[[], CanonicalLog]:
        return lambda: self.build_log(credential, resource(), raw)

    def build_log(
        self, credential: TenantCredential, resource_attrs: Mapping[str, str], raw: Any
    ) -> CanonicalLog:
        if not isinstance(raw, Mapping):
            raise RecordValidationError("log record is not an object")
        time_ns = _nanos(raw.get("timeUnixNano"), "timeUnixNano") or _nanos(
            raw.get("observedTimeUnixNano"), "observedTimeUnixNano"
        )
        if time_ns is None:
            raise RecordValidationError("missing timeUnixNano")

        attrs = flatten_attributes(raw.get("attributes"))
        attribution = resolve_attribution(credential, attrs, resource_attrs)
        vendor = self._vendor(resource_attrs, attrs)
        body = any_value_to_native(raw.get("body"))
        if body is not None and not isinstance(body, str):
            body = json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=str)
        severity = _severity(raw)
        timestamp = nanos_to_datetime(time_ns)
        trace_id = _identifier(raw.get("traceId"))
        span_id = _identifier(raw.get("spanId"))

        log = CanonicalLog(
            customer_id=attribution.customer_id,
            team_id=attribution.team_id,
            user_id=attribution.user_id,
            vendor=vendor.vendor,
            display_name=vendor.display_name,
            vendor_category=vendor.category,
            service_name=_service_name(resource_attrs, attrs),
            trace_id=trace_id,
            span_id=span_id,
            severity=severity,
            body=body,
            timestamp=timestamp,
            log_attributes=attrs,
            resource_attributes=dict(resource_attrs),
        )
        if trace_id and span_id:
            name = _first_value(LOG_SPAN_NAME_KEYS, attrs) or body or "log"
            log.span = CanonicalSpan(
                customer_id=attribution.customer_id,
                team_id=attribution.team_id,
                user_id=attribution.user_id,
                trace_id=trace_id,
                span_id=span_id,
                parent_span_id=None,
                span_name=name[:LOG_SPAN_NAME_LIMIT],
                span_kind="INTERNAL",
                start_time=timestamp,
                end_time=None,
                duration_ms=None,
                status_code="ERROR" if severity in ERROR_SEVERITIES else "UNSET",
                status_message=body[:LOG_SPAN_NAME_LIMIT] if severity in ERROR_SEVERITIES and body else None,
                vendor=vendor.vendor,
                display_name=vendor.display_name,
                vendor_category=vendor.category,
                is_llm=vendor.is_llm,
                service_name=log.service_name,
                span_attributes=attrs,
                resource_attributes=dict(resource_attrs),
                signal_type="log",
            )
        return log

    # -- persistence -----------------------------------------------------

    def _persist_span(self, session, span: CanonicalSpan, credential: TenantCredential) -> None:
        profile_id = ensure_tool_profile(
            session,
            span.customer_id,
            span.vendor,
            display_name=span.display_name,
            vendor_category=span.vendor_category,
        )
        write = upsert_span(session, span, profile_id)
        touch_tool_profile(
            session, profile_id, trace_id=span.trace_id, start_time=span.start_time, write=write
        )
        if write.inserted and span.is_llm and credential.key_hash:
            attrs = span.span_attributes
            cost = estimate_cost(
                model_of(attrs),
                input_tokens(attrs),
                output_tokens(attrs),
                pricing=self._config.pricing,
            )
            if cost > 0:
                charge_usage(session, credential.key_hash, cost)

    def persist(self, record: Record, credential: TenantCredential) -> None:
        with session_scope() as session:
            if isinstance(record, CanonicalSpan):
                self._persist_span(session, record, credential)
                return
            profile_id = ensure_tool_profile(
                session,
                record.customer_id,
                record.vendor,
                display_name=record.display_name,
                vendor_category=record.vendor_category,
            )
            if isinstance(record, CanonicalMetric):
                upsert_metric(session, record, profile_id)
                return
            insert_log(session, record, profile_id)
            if record.span is not None:
                self._persist_span(session, record.span, credential)

    # -- driver ----------------------------------------------------------

    def ingest(
        self,
        credential: TenantCredential,
        batch: Mapping[str, Any],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> IngestResult:
        """Ingest one OTLP JSON batch and report per-record outcomes.

        Stops early when ``timeout`` seconds elapse, ``cancel`` is set, or the
        store becomes unavailable. Records committed before that point stay
        committed and are listed in ``accepted_indices``; the rest are listed
        in ``unprocessed_indices``.
        """
        timeout = self._config.ingest.timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + timeout
        limit = self._config.ingest.max_records_per_batch
        result = IngestResult()
        items = list(self.iter_work(credential, batch))

        for position, item in enumerate(items):
            if (cancel is not None and cancel.is_set()) or time.monotonic() >= deadline:
                result.cancelled = True
                result.unprocessed_indices.extend(i.index for i in items[position:])
                break
            if item.index >= limit:
                result.reject(item.index, item.signal, f"batch exceeds {limit} records")
                continue
            try:
                record = self._build(item)
                self.persist(record, credential)
            except RecordRejectedError as exc:
                result.reject(item.index, item.signal, exc.reason)
                continue
            except StoreUnavailableError as exc:
                result.errors.append(exc.message)
                result.unprocessed_indices.extend(i.index for i in items[position:])
                logger.error(
                    "Store unavailable during ingest",
                    extra={"event": "store_unavailable", "index": item.index},
                )
                record_event(
                    "store_unavailable",
                    "ERROR",
                    message=exc.message,
                    customer_id=credential.customer_id,
                    meta=result.summary(),
                )
                break
            except SQLAlchemyError as exc:
                logger.exception(
                    "Record failed to persist",
                    extra={"event": "ingest_record_error", "index": item.index, "signal": item.signal},
                )
                result.reject(item.index, item.signal, f"storage error: {exc.__class__.__name__}")
                continue
            result.accept(item.index)

        self._report(credential, result)
        return result

    def _build(self, item: WorkItem) -> Record:
        try:
            return item.build()
        except MALFORMED_RECORD_ERRORS as exc:
            logger.warning(
                "Malformed record content",
                extra={"event": "ingest_record_malformed", "index": item.index, "signal": item.signal},
                exc_info=True,
            )
            raise RecordValidationError(f"malformed {item.signal}: {exc.__class__.__name__}") from exc

    def _report(self, credential: TenantCredential, result: IngestResult) -> None:
        logger.info(
            "Ingest batch processed",
            extra={"event": "ingest_batch", "customer_id": credential.customer_id, **result.summary()},
        )
        if result.rejected:
            record_event(
                "ingest_rejected",
                "WARNING",
                message=f"{len(result.rejected)} record(s) rejected",
                customer_id=credential.customer_id,
                meta={"rejected": [r.model_dump() for r in result.rejected[:20]]},
            )


_default_normalizer: IngestNormalizer | None = None
_default_lock = threading.Lock()


def get_normalizer() -> IngestNormalizer:
    global _default_normalizer
    with _default_lock:
        if _default_normalizer is None:
            _default_normalizer = IngestNormalizer()
        return _default_normalizer


def ingest(
    credential: TenantCredential,
    batch: Mapping[str, Any],
    *,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> IngestResult:
    return get_normalizer().ingest(credential, batch, timeout=timeout, cancel=cancel)


__all__ = [
    "IngestNormalizer",
    "TEAM_ATTR_KEYS",
    "USER_ATTR_KEYS",
    "get_normalizer",
    "ingest",
    "nanos_to_datetime",
    "resolve_attribution",
]
