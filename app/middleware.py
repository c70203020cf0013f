import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging_config import logger
from app.metrics import REQUEST_COUNT, REQUEST_LATENCY


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request id (incoming X-Request-ID or a fresh uuid) to state and response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


async def logging_middleware(request: Request, call_next):
    start = time.time()

    request_id = getattr(request.state, "request_id", None) or request.headers.get(
        "X-Request-ID", "unknown"
    )
    client_ip = request.client.host if request.client else "unknown"
    bound_logger = logger.bind(
        request_id=request_id,
        ip=client_ip,
        endpoint=str(request.url.path),
        method=request.method,
    )

    bound_logger.info("request_started")
    response = await call_next(request)
    latency = time.time() - start
    route = request.scope.get("route")
    endpoint = getattr(route, "path", None) or str(request.url.path)

    # streaming responses report time-to-first-byte here
    REQUEST_COUNT.labels(
        method=request.method, endpoint=endpoint, status_code=str(response.status_code)
    ).inc()
    REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(latency)
    bound_logger.bind(status_code=response.status_code, latency_ms=round(latency * 1000, 2)).info(
        "request_finished"
    )
    return response
