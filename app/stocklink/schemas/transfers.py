from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel


_TRANSFER_REQUEST_EXAMPLE = {
    "from_location_id": "0b7f6d1e-4a43-4c5e-9f55-0d5c3c1e7a10",
    "to_location_id": "5e2a9c07-3c43-4f0f-8b2c-5b1f8f0a2d44",
    "priority": "urgent",
    "transfer_type": "manual",
    "notes": "Weekend restock",
    "items": [
        {"product_id": "P-100", "variant_id": None, "quantity_requested": 20},
        {"product_id": "P-200", "variant_id": "P-200-RED-M", "quantity_requested": 4},
    ],
}


class TransferItemCreate(BaseModel):
    product_id: str
    variant_id: str | None = None
    quantity_requested: int
    notes: str | None = None


class TransferCreateRequest(BaseModel):
    from_location_id: UUID
    to_location_id: UUID
    priority: Literal["normal", "urgent"] = "normal"
    transfer_type: Literal["manual", "pos_request"] = "manual"
    origin_sale_id: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None
    items: list[TransferItemCreate]

    model_config = {"json_schema_extra": {"example": _TRANSFER_REQUEST_EXAMPLE}}


class ItemQuantity(BaseModel):
    item_id: str
    quantity: int


class TransferApproveRequest(BaseModel):
    version: int
    items: list[ItemQuantity]
    notes: str | None = None


class TransferRejectRequest(BaseModel):
    version: int
    reason: str


class TransferShipRequest(BaseModel):
    version: int
    notes: str | None = None


class TransferReceiveRequest(BaseModel):
    version: int
    items: list[ItemQuantity] = []
    final: bool = False
    notes: str | None = None


class TransferCancelRequest(BaseModel):
    version: int
    reason: str | None = None


class TransferFollowUpRequest(BaseModel):
    notes: str | None = None


class TransferItemResponse(BaseModel):
    id: str
    line_number: int
    product_id: str
    variant_id: str | None
    quantity_requested: int
    quantity_approved: int | None
    quantity_shipped: int | None
    quantity_received: int
    quantity_outstanding: int
    notes: str | None


class TransferResponse(BaseModel):
    id: str
    transfer_number: str
    from_location_id: str
    from_location_name: str | None = None
    to_location_id: str
    to_location_name: str | None = None
    status: str
    priority: str
    transfer_type: str
    origin_sale_id: str | None
    origin_transfer_id: str | None
    requested_by: str | None
    approved_by: str | None
    rejected_by: str | None
    shipped_by: str | None
    received_by: str | None
    cancelled_by: str | None
    requested_at: datetime
    expires_at: datetime | None
    approved_at: datetime | None
    rejected_at: datetime | None
    shipped_at: datetime | None
    received_at: datetime | None
    cancelled_at: datetime | None
    expired_at: datetime | None
    request_notes: str | None
    approval_notes: str | None
    rejection_reason: str | None
    shipping_notes: str | None
    receiving_notes: str | None
    cancellation_reason: str | None
    reconciliation_required: bool
    allowed_actions: list[str]
    version: int
    items: list[TransferItemResponse]


class TransferSummaryResponse(BaseModel):
    id: str
    transfer_number: str
    from_location_id: str
    from_location_name: str | None
    to_location_id: str
    to_location_name: str | None
    status: str
    priority: str
    transfer_type: str
    item_count: int
    total_quantity: int
    requested_at: datetime
    expires_at: datetime | None
    requested_by: str | None
    version: int


class TransferListResponse(BaseModel):
    page: int
    page_size: int
    total: int
    rows: list[TransferSummaryResponse]


class SweepRequest(BaseModel):
    now: datetime | None = None


class SweepResponse(BaseModel):
    expired: int


class TransferEventResponse(BaseModel):
    id: str
    action: str
    result: str
    actor: str | None
    actor_location_id: str | None
    trace_id: str | None
    before: dict | None
    after: dict | None
    metadata: dict | None
    created_at: datetime


class TransferEventListResponse(BaseModel):
    transfer_id: str
    rows: list[TransferEventResponse]
