"""
Middleware for request tracing and timing.
"""

import time
import uuid
import logging
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("quotedesk")

# Per-path warning thresholds. Carrier and automation calls wait on upstreams.
SLOW_REQUEST_MS = {
    "/api/quotes/ingest": 250,
}
SLOW_SUBMISSION_MS = 10000


def _slow_threshold(path: str) -> Optional[float]:
    if path in SLOW_REQUEST_MS:
        return SLOW_REQUEST_MS[path]
    if path.startswith("/v1/carriers/") or path.startswith("/v1/automation/"):
        return SLOW_SUBMISSION_MS
    return None


class PerformanceMiddleware(BaseHTTPMiddleware):
    """
    Tracks request duration and tags responses with a request id.

    - X-Request-ID: caller-provided value, or a generated UUID
    - X-Response-Time-Ms: server-side duration
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = (
            request.headers.get("X-Request-ID")
            or getattr(request.state, "request_id", None)
            or str(uuid.uuid4())
        )
        request.state.request_id = request_id

        start_time = time.time()
        logger.info(
            f"Request started | request_id={request_id} | method={request.method} | "
            f"path={request.url.path} | "
            f"client={request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed | request_id={request_id} | method={request.method} | "
                f"path={request.url.path} | duration_ms={duration_ms:.2f} | error={e}"
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Request completed | request_id={request_id} | method={request.method} | "
            f"path={request.url.path} | status={response.status_code} | "
            f"duration_ms={duration_ms:.2f}"
        )
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"

        threshold = _slow_threshold(request.url.path)
        if threshold is not None and duration_ms > threshold:
            logger.warning(
                f"Slow request | request_id={request_id} | path={request.url.path} | "
                f"duration_ms={duration_ms:.2f} | threshold_ms={threshold}"
            )

        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Guarantees request.state.request_id for handlers reached without PerformanceMiddleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not hasattr(request.state, "request_id"):
            request.state.request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        return await call_next(request)
