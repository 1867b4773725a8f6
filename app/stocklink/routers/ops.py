from fastapi import APIRouter, Depends, Response

from app.stocklink.core.config import settings
from app.stocklink.core.context import ActorContext
from app.stocklink.core.deps import require_admin
from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.core.metrics import metrics
from app.stocklink.db.session import get_db
from app.stocklink.schemas.transfers import SweepRequest, SweepResponse
from app.stocklink.services.transfer_workflow import TransferWorkflow


router = APIRouter()


@router.post("/stocklink/ops/transfers/expire", response_model=SweepResponse)
def expire_transfers(
    payload: SweepRequest | None = None,
    _admin: ActorContext = Depends(require_admin),
    db=Depends(get_db),
):
    if not settings.OPS_ENABLE_EXPIRY_SWEEP:
        raise AppError(ErrorCatalog.OPS_DISABLED, details={"operation": "expiry_sweep"})
    now = payload.now if payload else None
    if now is not None and now.tzinfo is not None:
        now = now.replace(tzinfo=None) - now.utcoffset()
    expired = TransferWorkflow(db).sweep_expired(now)
    return SweepResponse(expired=expired)


@router.get("/stocklink/ops/metrics", include_in_schema=False)
def get_metrics():
    snapshot = metrics.render()
    return Response(content=snapshot.content, media_type=snapshot.content_type)
