from uuid import UUID

from fastapi import APIRouter, Depends

from app.stocklink.core.context import ActorContext
from app.stocklink.core.deps import require_actor
from app.stocklink.db.session import get_db
from app.stocklink.repos.stock import StockRepository
from app.stocklink.schemas.stock import (
    StockLevelResponse,
    StockListResponse,
    StockMovementListResponse,
    StockMovementResponse,
)


router = APIRouter()


@router.get("/stocklink/stock", response_model=StockListResponse)
def list_stock(
    product_id: str | None = None,
    variant_id: str | None = None,
    location_id: UUID | None = None,
    _actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    rows = StockRepository(db).list_levels(product_id=product_id, variant_id=variant_id, location_id=location_id)
    return StockListResponse(
        rows=[
            StockLevelResponse(
                product_id=row.product_id,
                variant_id=row.variant_id,
                location_id=str(row.location_id),
                quantity=row.quantity,
                updated_at=row.updated_at,
            )
            for row in rows
        ]
    )


@router.get("/stocklink/stock/movements", response_model=StockMovementListResponse)
def list_movements(
    transfer_id: UUID | None = None,
    location_id: UUID | None = None,
    _actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    rows = StockRepository(db).list_movements(transfer_id=transfer_id, location_id=location_id)
    return StockMovementListResponse(
        rows=[
            StockMovementResponse(
                id=str(row.id),
                product_id=row.product_id,
                variant_id=row.variant_id,
                location_id=str(row.location_id),
                delta=row.delta,
                quantity_before=row.quantity_before,
                quantity_after=row.quantity_after,
                reason=row.reason,
                transfer_id=str(row.transfer_id) if row.transfer_id else None,
                transfer_item_id=str(row.transfer_item_id) if row.transfer_item_id else None,
                created_at=row.created_at,
            )
            for row in rows
        ]
    )
