"""
Metrics middleware for automatic HTTP request tracking
"""
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import time
from typing import Callable

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.metrics import metrics_collector


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to automatically collect HTTP request metrics"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Scrapes are not counted
        if request.url.path == settings.METRICS_PATH:
            return await call_next(request)

        start_time = time.time()
        endpoint = endpoint_pattern(request.url.path)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            metrics_collector.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code,
                duration=time.time() - start_time
            )


def endpoint_pattern(path: str) -> str:
    """Replace id segments so each route maps to one label value"""
    if not path.startswith("/api/v1/"):
        return path
    parts = ["{id}" if _is_uuid_or_id(part) else part for part in path.split("/")]
    return "/".join(parts)


def _is_uuid_or_id(value: str) -> bool:
    # UUID pattern
    if len(value) == 36 and value.count("-") == 4:
        return True
    return value.isdigit()
