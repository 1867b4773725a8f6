from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import selectinload

from app.stocklink.db.models import Transfer

ROLE_SOURCE = "source"
ROLE_DESTINATION = "destination"
ROLE_ANY = "any"


@dataclass(frozen=True)
class TransferQueryFilters:
    location_id: str | None = None
    role: str = ROLE_ANY
    statuses: tuple[str, ...] = field(default_factory=tuple)
    priority: str | None = None
    transfer_type: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


class TransferRepository:
    def __init__(self, db):
        self.db = db

    def get_transfer(self, transfer_id) -> Transfer | None:
        return (
            self.db.execute(
                select(Transfer).options(selectinload(Transfer.items)).where(Transfer.id == transfer_id)
            )
            .scalars()
            .first()
        )

    def add(self, transfer: Transfer) -> Transfer:
        self.db.add(transfer)
        return transfer

    def number_exists(self, transfer_number: str) -> bool:
        return (
            self.db.execute(select(Transfer.id).where(Transfer.transfer_number == transfer_number)).first()
            is not None
        )

    def list_transfers(
        self,
        filters: TransferQueryFilters,
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[Transfer], int]:
        query = self._apply_filters(filters)
        total = self.db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        urgent_first = case((Transfer.priority == "urgent", 0), else_=1)
        rows = (
            self.db.execute(
                query.options(selectinload(Transfer.items))
                .order_by(urgent_first, Transfer.requested_at.desc(), Transfer.transfer_number.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            .scalars()
            .all()
        )
        return rows, int(total or 0)

    def list_expirable(
        self,
        now: datetime,
        *,
        statuses: tuple[str, ...],
        limit: int,
        after: tuple | None = None,
    ) -> list[tuple]:
        """Return ``(id, version, expires_at)`` rows of transfers whose deadline has passed.

        Rows come in ``(expires_at, id)`` order; ``after`` is the last such key of
        the previous page.
        """
        query = select(Transfer.id, Transfer.version, Transfer.expires_at).where(
            Transfer.status.in_(statuses),
            Transfer.expires_at.is_not(None),
            Transfer.expires_at <= now,
        )
        if after is not None:
            last_expires_at, last_id = after
            query = query.where(
                or_(
                    Transfer.expires_at > last_expires_at,
                    and_(Transfer.expires_at == last_expires_at, Transfer.id > last_id),
                )
            )
        query = query.order_by(Transfer.expires_at.asc(), Transfer.id.asc()).limit(limit)
        return [(row.id, row.version, row.expires_at) for row in self.db.execute(query).all()]

    def _apply_filters(self, filters: TransferQueryFilters):
        query = select(Transfer)
        if filters.location_id:
            if filters.role == ROLE_SOURCE:
                query = query.where(Transfer.from_location_id == filters.location_id)
            elif filters.role == ROLE_DESTINATION:
                query = query.where(Transfer.to_location_id == filters.location_id)
            else:
                query = query.where(
                    or_(
                        Transfer.from_location_id == filters.location_id,
                        Transfer.to_location_id == filters.location_id,
                    )
                )
        if filters.statuses:
            query = query.where(Transfer.status.in_(filters.statuses))
        if filters.priority:
            query = query.where(Transfer.priority == filters.priority)
        if filters.transfer_type:
            query = query.where(Transfer.transfer_type == filters.transfer_type)
        if filters.date_from:
            query = query.where(Transfer.requested_at >= filters.date_from)
        if filters.date_to:
            query = query.where(Transfer.requested_at <= filters.date_to)
        return query
