import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.stocklink.core.context import ACTOR_ID_HEADER, LOCATION_ID_HEADER, ROLE_HEADER, build_actor_context

TRACE_HEADER = "X-Trace-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns the trace id and copies the identity gateway's actor headers onto ``request.state``.

    The trace id is taken from ``X-Trace-ID`` when the caller sends one and is
    echoed back on every response, errors included.
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        context = build_actor_context(
            actor_id=request.headers.get(ACTOR_ID_HEADER),
            location_id=request.headers.get(LOCATION_ID_HEADER),
            role=request.headers.get(ROLE_HEADER),
            trace_id=trace_id,
        )
        request.state.trace_id = trace_id
        request.state.actor_id = context.actor_id
        request.state.location_id = context.location_id
        request.state.context = context
        response = await call_next(request)
        response.headers[TRACE_HEADER] = trace_id
        return response
