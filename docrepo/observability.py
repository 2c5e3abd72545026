from __future__ import annotations

import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware

from docrepo.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

REQUEST_ID_HEADER = "X-Request-ID"


def _route_path(request) -> str:
    # Label by route template so upload ids do not explode label cardinality
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            path = _route_path(request)
            elapsed = perf_counter() - started
            REQUEST_COUNT.labels(method=request.method, path=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, path=path, status=status).observe(
                elapsed
            )
            if status.startswith("5"):
                REQUEST_ERRORS.labels(method=request.method, path=path, status=status).inc()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
