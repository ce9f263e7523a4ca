# ============================================================================
# File: api/middleware.py
# Description: Request id, latency and cache headers for the boundary API
# ============================================================================

import time
import uuid
import logging
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from core.config import settings

logger = logging.getLogger(__name__)

# Boundary tables only change when an update run finishes
CACHEABLE_PREFIXES = ("/countries",)
# Run bookkeeping and health must always be read fresh
UNCACHED_PREFIXES = ("/health", "/runs")


def cache_control(method: str, path: str, status_code: int, max_age: int) -> Optional[str]:
    """Cache-Control value for a response, None to leave the header unset"""
    if path.startswith(UNCACHED_PREFIXES):
        return "no-store"
    if method == "GET" and 200 <= status_code < 300 and path.startswith(CACHEABLE_PREFIXES):
        return f"public, max-age={max_age}"
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Per request:
    - X-Request-ID, reused from the incoming header or generated
    - X-API-Latency-ms, with a warning above the slow-request threshold
    - Cache-Control for boundary reads and run bookkeeping
    """

    def __init__(self, app, cache_seconds: Optional[int] = None, slow_request_ms: Optional[int] = None):
        super().__init__(app)
        self.cache_seconds = settings.COUNTRIES_CACHE_SECONDS if cache_seconds is None else cache_seconds
        self.slow_request_ms = settings.API_SLOW_REQUEST_MS if slow_request_ms is None else slow_request_ms

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        policy = cache_control(request.method, request.url.path, response.status_code, self.cache_seconds)
        if policy is not None:
            response.headers["Cache-Control"] = policy

        summary = f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)"
        if latency_ms > self.slow_request_ms:
            logger.warning(f"Slow request {summary}")
        else:
            logger.debug(summary)
        return response
