from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.stocklink.core.config import settings
from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.db.models import Transfer
from app.stocklink.repos.locations import LocationRepository
from app.stocklink.repos.transfers import (
    ROLE_ANY,
    ROLE_DESTINATION,
    ROLE_SOURCE,
    TransferQueryFilters,
    TransferRepository,
)
from app.stocklink.services.transfer_states import TransferStatus


@dataclass(frozen=True)
class TransferSummary:
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


class TransferQueryService:
    """Read side for dashboards: lists transfers by location role and status."""

    def __init__(self, db):
        self.repo = TransferRepository(db)
        self.locations = LocationRepository(db)

    def list_transfers(
        self,
        *,
        location_id: str | None = None,
        role: str = ROLE_ANY,
        statuses: list[str] | None = None,
        priority: str | None = None,
        transfer_type: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[TransferSummary], int]:
        if role not in {ROLE_ANY, ROLE_SOURCE, ROLE_DESTINATION}:
            raise AppError(ErrorCatalog.INVALID_INPUT, details={"message": "unknown role", "role": role})
        if role != ROLE_ANY and not location_id:
            raise AppError(
                ErrorCatalog.INVALID_INPUT,
                details={"message": "location_id is required when filtering by role"},
            )
        known_statuses = {status.value for status in TransferStatus}
        unknown = sorted(set(statuses or []) - known_statuses)
        if unknown:
            raise AppError(ErrorCatalog.INVALID_INPUT, details={"message": "unknown status", "statuses": unknown})
        if date_from and date_to and date_from > date_to:
            raise AppError(ErrorCatalog.INVALID_INPUT, details={"message": "date_from must not be after date_to"})
        page = max(page, 1)
        page_size = min(max(page_size, 1), settings.TRANSFER_LIST_MAX_PAGE_SIZE)

        filters = TransferQueryFilters(
            location_id=location_id,
            role=role,
            statuses=tuple(statuses or ()),
            priority=priority,
            transfer_type=transfer_type,
            date_from=date_from,
            date_to=date_to,
        )
        rows, total = self.repo.list_transfers(filters, page=page, page_size=page_size)
        names = self.locations.names_by_id(
            [row.from_location_id for row in rows] + [row.to_location_id for row in rows]
        )
        return [self._summary(row, names) for row in rows], total

    def pending_approvals(self, location_id: str, *, approver: str | None = None) -> list[TransferSummary]:
        role = ROLE_SOURCE if (approver or settings.TRANSFER_APPROVER) == ROLE_SOURCE else ROLE_DESTINATION
        rows, _ = self.list_transfers(
            location_id=location_id,
            role=role,
            statuses=[TransferStatus.PENDING.value],
            page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE,
        )
        return rows

    def incoming(self, location_id: str) -> list[TransferSummary]:
        rows, _ = self.list_transfers(
            location_id=location_id,
            role=ROLE_DESTINATION,
            statuses=[TransferStatus.APPROVED.value, TransferStatus.IN_TRANSIT.value],
            page_size=settings.TRANSFER_LIST_MAX_PAGE_SIZE,
        )
        return rows

    @staticmethod
    def _summary(transfer: Transfer, names: dict[str, str]) -> TransferSummary:
        return TransferSummary(
            id=str(transfer.id),
            transfer_number=transfer.transfer_number,
            from_location_id=str(transfer.from_location_id),
            from_location_name=names.get(str(transfer.from_location_id)),
            to_location_id=str(transfer.to_location_id),
            to_location_name=names.get(str(transfer.to_location_id)),
            status=transfer.status,
            priority=transfer.priority,
            transfer_type=transfer.transfer_type,
            item_count=len(transfer.items),
            total_quantity=sum(item.quantity_requested for item in transfer.items),
            requested_at=transfer.requested_at,
            expires_at=transfer.expires_at,
            requested_by=transfer.requested_by,
            version=transfer.version,
        )
