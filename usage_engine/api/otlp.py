"""OTLP/HTTP JSON ingestion routes."""

from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from usage_engine.ingest.normalizer import ingest
from usage_engine.ingest.records import IngestResult

from .dependencies import CredentialDep

router = APIRouter(prefix="/v1")


async def _read_batch(request: Request, signal_key: str) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if "protobuf" in content_type:
        raise HTTPException(status_code=415, detail="OTLP/protobuf is not supported; send OTLP/JSON")
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Malformed OTLP JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="OTLP payload must be a JSON object")
    entries = payload.get(signal_key, [])
    if not isinstance(entries, list):
        raise HTTPException(status_code=400, detail=f"'{signal_key}' must be an array")
    return {signal_key: entries}


def _respond(result: IngestResult) -> JSONResponse:
    # A store outage mid-batch is retryable; the body still says what was committed.
    status_code = 503 if result.errors else 200
    return JSONResponse(status_code=status_code, content=result.model_dump())


@router.post("/traces", response_model=IngestResult)
async def ingest_traces(request: Request, credential: CredentialDep) -> JSONResponse:
    batch = await _read_batch(request, "resourceSpans")
    return _respond(await run_in_threadpool(ingest, credential, batch))


@router.post("/metrics", response_model=IngestResult)
async def ingest_metrics(request: Request, credential: CredentialDep) -> JSONResponse:
    batch = await _read_batch(request, "resourceMetrics")
    return _respond(await run_in_threadpool(ingest, credential, batch))


@router.post("/logs", response_model=IngestResult)
async def ingest_logs(request: Request, credential: CredentialDep) -> JSONResponse:
    batch = await _read_batch(request, "resourceLogs")
    return _respond(await run_in_threadpool(ingest, credential, batch))
