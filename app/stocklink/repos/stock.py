from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.db.models import StockLevel, StockMovement


MOVEMENT_REASON_TRANSFER = "transfer"
MOVEMENT_REASON_SALE = "sale"
MOVEMENT_REASON_ADJUSTMENT = "adjustment"


@dataclass(frozen=True)
class StockKey:
    product_id: str
    variant_id: str | None
    location_id: str

    def as_details(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": str(self.location_id),
        }


class StockLedger:
    """Available-quantity counter per (product, variant, location).

    Implementations must apply each delta as one atomic read-modify-write and
    refuse any delta that would leave the quantity below zero.
    """

    def get_available(self, product_id: str, variant_id: str | None, location_id) -> int:
        raise NotImplementedError

    def apply_delta(
        self,
        product_id: str,
        variant_id: str | None,
        location_id,
        delta: int,
        *,
        reason: str,
        transfer_id=None,
        transfer_item_id=None,
    ) -> int:
        raise NotImplementedError


class SqlStockLedger(StockLedger):
    """Ledger backed by the ``stock_levels`` table.

    Runs inside the caller's session and never commits, so stock writes share
    the transaction of whatever transfer write they accompany.
    """

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _key_clause(product_id: str, variant_id: str | None, location_id):
        clauses = [StockLevel.product_id == product_id, StockLevel.location_id == location_id]
        if variant_id is None:
            clauses.append(StockLevel.variant_id.is_(None))
        else:
            clauses.append(StockLevel.variant_id == variant_id)
        return clauses

    def _current(self, product_id: str, variant_id: str | None, location_id) -> int | None:
        return self.db.execute(
            select(StockLevel.quantity).where(*self._key_clause(product_id, variant_id, location_id))
        ).scalar_one_or_none()

    def get_available(self, product_id: str, variant_id: str | None, location_id) -> int:
        return int(self._current(product_id, variant_id, location_id) or 0)

    def apply_delta(
        self,
        product_id: str,
        variant_id: str | None,
        location_id,
        delta: int,
        *,
        reason: str,
        transfer_id=None,
        transfer_item_id=None,
    ) -> int:
        key = StockKey(product_id=product_id, variant_id=variant_id, location_id=location_id)
        now = datetime.utcnow()
        result = self.db.execute(
            update(StockLevel)
            .where(*self._key_clause(product_id, variant_id, location_id))
            .where(StockLevel.quantity + delta >= 0)
            .values(quantity=StockLevel.quantity + delta, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self._current(product_id, variant_id, location_id)
            if current is not None or delta < 0:
                raise AppError(
                    ErrorCatalog.WOULD_GO_NEGATIVE,
                    details={**key.as_details(), "delta": delta, "available": int(current or 0)},
                )
            quantity_after = self._insert_level(key, delta, now)
        else:
            quantity_after = int(self._current(product_id, variant_id, location_id))

        self.db.add(
            StockMovement(
                product_id=product_id,
                variant_id=variant_id,
                location_id=location_id,
                delta=delta,
                quantity_before=quantity_after - delta,
                quantity_after=quantity_after,
                reason=reason,
                transfer_id=transfer_id,
                transfer_item_id=transfer_item_id,
                created_at=now,
            )
        )
        return quantity_after

    def _insert_level(self, key: StockKey, quantity: int, now: datetime) -> int:
        # A concurrent insert of the same key loses on the unique index; the
        # savepoint keeps the surrounding transaction usable for the retry.
        try:
            with self.db.begin_nested():
                self.db.add(
                    StockLevel(
                        product_id=key.product_id,
                        variant_id=key.variant_id,
                        location_id=key.location_id,
                        quantity=quantity,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            self.db.execute(
                update(StockLevel)
                .where(*self._key_clause(key.product_id, key.variant_id, key.location_id))
                .values(quantity=StockLevel.quantity + quantity, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return int(self._current(key.product_id, key.variant_id, key.location_id))
        return quantity


class StockRepository:
    def __init__(self, db):
        self.db = db

    def list_levels(self, *, product_id: str | None = None, variant_id: str | None = None, location_id=None):
        query = select(StockLevel)
        if product_id:
            query = query.where(StockLevel.product_id == product_id)
        if variant_id:
            query = query.where(StockLevel.variant_id == variant_id)
        if location_id:
            query = query.where(StockLevel.location_id == location_id)
        return self.db.execute(query.order_by(StockLevel.product_id, StockLevel.variant_id)).scalars().all()

    def list_movements(self, *, transfer_id=None, location_id=None) -> list[StockMovement]:
        query = select(StockMovement)
        if transfer_id:
            query = query.where(StockMovement.transfer_id == transfer_id)
        if location_id:
            query = query.where(StockMovement.location_id == location_id)
        return self.db.execute(query.order_by(StockMovement.created_at.asc())).scalars().all()
