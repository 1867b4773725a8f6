from datetime import datetime

from pydantic import BaseModel


class StockLevelResponse(BaseModel):
    product_id: str
    variant_id: str | None
    location_id: str
    quantity: int
    updated_at: datetime


class StockListResponse(BaseModel):
    rows: list[StockLevelResponse]


class StockMovementResponse(BaseModel):
    id: str
    product_id: str
    variant_id: str | None
    location_id: str
    delta: int
    quantity_before: int
    quantity_after: int
    reason: str
    transfer_id: str | None
    transfer_item_id: str | None
    created_at: datetime


class StockMovementListResponse(BaseModel):
    rows: list[StockMovementResponse]
