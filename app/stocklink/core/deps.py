from fastapi import Depends, Request

from app.stocklink.core.context import ActorContext, get_actor_context
from app.stocklink.core.error_catalog import AppError, ErrorCatalog


def require_actor(request: Request) -> ActorContext:
    context = get_actor_context(request)
    if not context.actor_id:
        raise AppError(ErrorCatalog.ACTOR_CONTEXT_REQUIRED, details={"missing": ["X-Actor-Id"]})
    if not context.location_id and not context.is_admin:
        raise AppError(ErrorCatalog.ACTOR_CONTEXT_REQUIRED, details={"missing": ["X-Location-Id"]})
    return context


def require_admin(context: ActorContext = Depends(require_actor)) -> ActorContext:
    if not context.is_admin:
        raise AppError(ErrorCatalog.FORBIDDEN_PARTICIPANT, details={"message": "admin role required"})
    return context


__all__ = ["require_actor", "require_admin", "get_actor_context"]
