from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.stocklink.core.error_catalog import ErrorCatalog
from app.stocklink.core.logging import log_json
from app.stocklink.core.metrics import metrics
from app.stocklink.db.session import begin_query_timer, current_query_time_ms, end_query_timer

logger = logging.getLogger("stocklink.request")

TRANSFERS_PREFIX = "/stocklink/transfers"


def transfer_action(method: str, route: str) -> str | None:
    """Name the transfer operation a route template stands for, or None for other routes."""
    if not route.startswith(TRANSFERS_PREFIX):
        return None
    if method == "GET":
        return "read"
    if route == TRANSFERS_PREFIX:
        return "request"
    return route.rsplit("/", 1)[-1].replace("-", "_")


def _route_template(request: Request) -> str:
    scope_route = request.scope.get("route")
    return getattr(scope_route, "path", None) or request.url.path


def build_request_log_payload(
    *,
    request: Request,
    response: Response | None,
    latency_ms: float,
    db_time_ms: float | None,
) -> dict:
    route = _route_template(request)
    state = request.state
    payload = {
        "event": "http_request",
        "trace_id": getattr(state, "trace_id", ""),
        "actor_id": getattr(state, "actor_id", None),
        "location_id": getattr(state, "location_id", None),
        "route": route,
        "method": request.method,
        "status_code": getattr(response, "status_code", 500),
        "latency_ms": round(latency_ms, 2),
        "db_time_ms": round(db_time_ms, 2) if db_time_ms is not None else None,
        "error_code": getattr(state, "error_code", None),
        "error_class": getattr(state, "error_class", None),
    }
    action = transfer_action(request.method, route)
    if action is not None:
        # expected_version is what the caller sent; transfer_version is what the row holds afterwards.
        payload.update(
            {
                "transfer_id": getattr(state, "transfer_id", None) or request.path_params.get("transfer_id"),
                "transfer_action": action,
                "transfer_status": getattr(state, "transfer_status", None),
                "transfer_version": getattr(state, "transfer_version", None),
                "expected_version": getattr(state, "expected_version", None),
            }
        )
    return payload


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        token = begin_query_timer()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            latency_ms = (time.perf_counter() - start_time) * 1000
            db_time_ms = current_query_time_ms()
            end_query_timer(token)
            payload = build_request_log_payload(
                request=request,
                response=response,
                latency_ms=latency_ms,
                db_time_ms=db_time_ms,
            )
            level = logging.INFO
            if payload.get("transfer_action") and payload["error_code"] == ErrorCatalog.CONFLICT.code:
                level = logging.WARNING
            log_json(logger, payload, level)
            metrics.record_http_request(
                route=payload["route"],
                method=payload["method"],
                status_code=payload["status_code"],
                latency_ms=latency_ms,
            )
