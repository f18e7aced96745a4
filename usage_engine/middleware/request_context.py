"""Request context middleware for logging correlation."""

from __future__ import annotations

import time
import uuid
from typing import Callable, Awaitable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from usage_engine.logging import bind_log_context, reset_log_context


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request ID and the presenting tenant to each inbound request."""

    async def dispatch(  # type: ignore[override]
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = bind_log_context(
            request_id=request_id,
            customer_id=request.headers.get("x-customer-id"),
            team_id=request.headers.get("x-team-id"),
        )
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request.state.request_duration_ms = (time.perf_counter() - start) * 1000
            reset_log_context(token)
        response.headers.setdefault("x-request-id", request_id)
        return response
