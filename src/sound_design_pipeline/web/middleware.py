from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response

from sound_design_pipeline.utils.log import logger, set_request_id

REQUEST_ID_HEADER = "x-request-id"

CallNext = Callable[[Request], Awaitable[Response]]


async def request_context_middleware(request: Request, call_next: CallNext) -> Response:
    """Bind the caller's X-Request-ID (or a fresh one) for the request and echo it back."""
    rid = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    set_request_id(rid)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers.setdefault(REQUEST_ID_HEADER, rid)
    return response


async def log_requests(request: Request, call_next: CallNext) -> Response:
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        # SSE responses are logged when headers go out, not when the stream closes.
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=status_code,
            client=request.client.host if request.client else None,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 1),
        )
