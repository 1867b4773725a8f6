import uuid
from dataclasses import dataclass

from fastapi import Request

ADMIN_ROLE = "admin"
SYSTEM_ACTOR = "system:expiry-sweep"

ACTOR_ID_HEADER = "X-Actor-Id"
LOCATION_ID_HEADER = "X-Location-Id"
ROLE_HEADER = "X-Actor-Role"


@dataclass(frozen=True)
class ActorContext:
    actor_id: str | None
    location_id: str | None
    role: str | None
    trace_id: str

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == ADMIN_ROLE


def _normalize_location_id(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return str(value)


def build_actor_context(
    *,
    actor_id: str | None,
    location_id: str | None,
    role: str | None,
    trace_id: str,
) -> ActorContext:
    return ActorContext(
        actor_id=actor_id or None,
        location_id=_normalize_location_id(location_id),
        role=role or None,
        trace_id=trace_id,
    )


def system_context(trace_id: str = "") -> ActorContext:
    return ActorContext(actor_id=SYSTEM_ACTOR, location_id=None, role=ADMIN_ROLE, trace_id=trace_id)


def get_actor_context(request: Request) -> ActorContext:
    context = getattr(request.state, "context", None)
    if isinstance(context, ActorContext):
        return context
    return build_actor_context(
        actor_id=request.headers.get(ACTOR_ID_HEADER),
        location_id=request.headers.get(LOCATION_ID_HEADER),
        role=request.headers.get(ROLE_HEADER),
        trace_id=getattr(request.state, "trace_id", ""),
    )
