"""Tenant-scoped read routes: tool profiles, traces and rollups."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, HTTPException, Query

from usage_engine.rollup.engine import (
    Granularity,
    LlmMetricStats,
    RollupScope,
    RollupStats,
    get_rollup,
    metric_llm_stats,
    profile_latency,
)
from usage_engine.storage.profiles import delete_tool_profile, get_tool_profile, list_tool_profiles
from usage_engine.storage.spans import get_trace, list_metric_summaries, list_spans

from .dependencies import CustomerDep

router = APIRouter(prefix="/v1")


@router.get("/tool-profiles")
def list_profiles(customer_id: CustomerDep) -> dict:
    return {"tool_profiles": list_tool_profiles(customer_id)}


@router.get("/tool-profiles/{vendor}")
def get_profile(vendor: str, customer_id: CustomerDep) -> dict:
    profile = get_tool_profile(customer_id, vendor)
    profile["latency"] = profile_latency(customer_id, vendor).model_dump()
    return profile


@router.delete("/tool-profiles/{vendor}")
def delete_profile(vendor: str, customer_id: CustomerDep) -> dict:
    removed = delete_tool_profile(customer_id, vendor)
    return {"status": "deleted", "vendor": vendor, "removed": removed}


@router.get("/tool-profiles/{vendor}/spans")
def list_profile_spans(
    vendor: str,
    customer_id: CustomerDep,
    trace_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> dict:
    get_tool_profile(customer_id, vendor)
    spans = list_spans(
        customer_id,
        vendor=vendor,
        trace_id=trace_id,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return {"spans": spans, "limit": limit, "offset": offset}


@router.get("/tool-profiles/{vendor}/metrics")
def list_profile_metrics(vendor: str, customer_id: CustomerDep) -> dict:
    get_tool_profile(customer_id, vendor)
    return {"metrics": list_metric_summaries(customer_id, vendor)}


@router.get("/tool-profiles/{vendor}/llm-stats", response_model=LlmMetricStats)
def get_llm_stats(
    vendor: str,
    customer_id: CustomerDep,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> LlmMetricStats:
    return metric_llm_stats(customer_id, vendor, start=start, end=end)


@router.get("/traces/{trace_id}")
def get_trace_spans(trace_id: str, customer_id: CustomerDep) -> dict:
    spans = get_trace(customer_id, trace_id)
    if not spans:
        raise HTTPException(status_code=404, detail="Trace not found")
    return {"trace_id": trace_id, "spans": spans}


@router.get("/rollups", response_model=RollupStats)
def rollup(
    customer_id: CustomerDep,
    scope: RollupScope = RollupScope.TENANT,
    scope_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    granularity: Granularity = Granularity.HOUR,
) -> RollupStats:
    try:
        return get_rollup(
            customer_id,
            scope,
            scope_id,
            start=start,
            end=end,
            granularity=granularity,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
