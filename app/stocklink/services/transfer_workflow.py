"""Transfer workflow engine.

Each mutating operation loads the transfer under a row lock, checks the
caller's ``version``, resolves the transition from the state table and then
writes the status, the item quantities and the accompanying stock movements
in one transaction. Source stock is decremented at approval time; shipping is
a pure status change.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from app.stocklink.core.config import settings
from app.stocklink.core.context import ActorContext, system_context
from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.core.logging import log_json
from app.stocklink.core.metrics import metrics
from app.stocklink.db.models import Transfer, TransferItem
from app.stocklink.repos.locations import LocationRepository
from app.stocklink.repos.stock import MOVEMENT_REASON_TRANSFER, SqlStockLedger, StockLedger
from app.stocklink.repos.transfers import TransferRepository
from app.stocklink.services.audit import AuditEventPayload, AuditService
from app.stocklink.services.transfer_states import (
    EXPIRABLE_STATUSES,
    StockEffect,
    TransferAction,
    TransferPriority,
    TransferStatus,
    TransferType,
    resolve_transition,
)

logger = logging.getLogger("stocklink.transfers")

PARTICIPANT_SOURCE = "source"
PARTICIPANT_DESTINATION = "destination"

_SWEEP_SKIPPABLE = {
    ErrorCatalog.CONFLICT.code,
    ErrorCatalog.INVALID_STATE_TRANSITION.code,
    ErrorCatalog.NOT_FOUND.code,
}


@dataclass(frozen=True)
class RequestedItem:
    product_id: str
    quantity_requested: int
    variant_id: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class QuantityLine:
    item_id: str
    quantity: int


def _invalid(message: str, **details) -> AppError:
    return AppError(ErrorCatalog.INVALID_INPUT, details={"message": message, **details})


class TransferWorkflow:
    def __init__(
        self,
        db,
        *,
        ledger: StockLedger | None = None,
        clock=None,
        approver: str | None = None,
        expiration_hours: int | None = None,
    ):
        self.db = db
        self.repo = TransferRepository(db)
        self.locations = LocationRepository(db)
        self.ledger = ledger or SqlStockLedger(db)
        self.audit = AuditService(db)
        self._clock = clock or datetime.utcnow
        self.approver = (approver or settings.TRANSFER_APPROVER).lower()
        self.expiration_hours = (
            settings.TRANSFER_EXPIRATION_HOURS if expiration_hours is None else expiration_hours
        )

    # ------------------------------------------------------------------ reads

    def get_transfer(self, transfer_id) -> Transfer:
        transfer = self.repo.get_transfer(transfer_id)
        if transfer is None:
            raise AppError(ErrorCatalog.NOT_FOUND, details={"transfer_id": str(transfer_id)})
        return transfer

    # -------------------------------------------------------------- operations

    def request_transfer(
        self,
        *,
        from_location_id,
        to_location_id,
        items: list[RequestedItem],
        actor: ActorContext,
        priority: str = TransferPriority.NORMAL.value,
        transfer_type: str = TransferType.MANUAL.value,
        origin_sale_id: str | None = None,
        notes: str | None = None,
        expires_at: datetime | None = None,
        origin_transfer_id=None,
    ) -> Transfer:
        try:
            transfer = self._build_request(
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                items=items,
                actor=actor,
                priority=priority,
                transfer_type=transfer_type,
                origin_sale_id=origin_sale_id,
                notes=notes,
                expires_at=expires_at,
                origin_transfer_id=origin_transfer_id,
            )
            self.repo.add(transfer)
            self._commit(transfer.id, prior_status=None)
        except AppError as exc:
            self.db.rollback()
            self._record_rejection("request", None, actor, exc, before=None)
            raise
        self._record_success("request", transfer, actor, before=None)
        return transfer

    def approve_transfer(
        self,
        transfer_id,
        version: int,
        approved_quantities: list[QuantityLine],
        *,
        actor: ActorContext,
        notes: str | None = None,
    ) -> Transfer:
        def apply(transfer: Transfer) -> None:
            self._require_participant(actor, transfer, self._approver_side())
            transition = resolve_transition(transfer.status, TransferAction.APPROVE)
            quantities = self._quantities_by_item(transfer, approved_quantities, require_all=True)
            for item in transfer.items:
                approved = quantities[str(item.id)]
                if approved < 0 or approved > item.quantity_requested:
                    raise _invalid(
                        "approved quantity must be between 0 and quantity_requested",
                        item_id=str(item.id),
                        quantity_requested=item.quantity_requested,
                        attempted=approved,
                    )
            now = self._stamp(transfer)
            for item in transfer.items:
                item.quantity_approved = quantities[str(item.id)]
            transfer.status = transition.next_status.value
            transfer.approved_at = now
            transfer.approved_by = actor.actor_id
            transfer.approval_notes = notes
            transfer.updated_at = now
            self._flush_versioned(transfer)
            self._apply_stock_effect(transfer, transition.stock_effect)

        return self._run(TransferAction.APPROVE, transfer_id, version, actor, apply)

    def reject_transfer(self, transfer_id, version: int, reason: str, *, actor: ActorContext) -> Transfer:
        def apply(transfer: Transfer) -> None:
            self._require_participant(actor, transfer, self._approver_side())
            transition = resolve_transition(transfer.status, TransferAction.REJECT)
            if not reason or not reason.strip():
                raise _invalid("rejection reason is required")
            now = self._stamp(transfer)
            transfer.status = transition.next_status.value
            transfer.rejection_reason = reason.strip()
            transfer.rejected_at = now
            transfer.rejected_by = actor.actor_id
            transfer.updated_at = now
            self._flush_versioned(transfer)

        return self._run(TransferAction.REJECT, transfer_id, version, actor, apply)

    def mark_in_transit(
        self,
        transfer_id,
        version: int,
        *,
        actor: ActorContext,
        notes: str | None = None,
    ) -> Transfer:
        def apply(transfer: Transfer) -> None:
            self._require_participant(actor, transfer, {PARTICIPANT_SOURCE})
            transition = resolve_transition(transfer.status, TransferAction.SHIP)
            now = self._stamp(transfer)
            for item in transfer.items:
                item.quantity_shipped = item.quantity_approved or 0
            transfer.status = transition.next_status.value
            transfer.shipped_at = now
            transfer.shipped_by = actor.actor_id
            transfer.shipping_notes = notes
            transfer.updated_at = now
            self._flush_versioned(transfer)

        return self._run(TransferAction.SHIP, transfer_id, version, actor, apply)

    def receive_transfer(
        self,
        transfer_id,
        version: int,
        received_quantities: list[QuantityLine],
        *,
        actor: ActorContext,
        final: bool = False,
        notes: str | None = None,
    ) -> Transfer:
        def apply(transfer: Transfer) -> None:
            self._require_participant(actor, transfer, {PARTICIPANT_DESTINATION})
            resolve_transition(transfer.status, TransferAction.RECEIVE)
            deltas = self._quantities_by_item(transfer, received_quantities, require_all=False)
            for item in transfer.items:
                delta = deltas.get(str(item.id), 0)
                remaining = (item.quantity_shipped or 0) - item.quantity_received
                if delta < 0:
                    raise _invalid("received quantity must not be negative", item_id=str(item.id), attempted=delta)
                if delta > remaining:
                    raise AppError(
                        ErrorCatalog.OVER_RECEIPT,
                        details={
                            "item_id": str(item.id),
                            "product_id": item.product_id,
                            "variant_id": item.variant_id,
                            "attempted": delta,
                            "remaining": remaining,
                        },
                    )

            complete = all(
                item.quantity_received + deltas.get(str(item.id), 0) == (item.quantity_shipped or 0)
                for item in transfer.items
            )
            if complete:
                outcome = TransferAction.COMPLETE_RECEIPT
            elif final:
                outcome = TransferAction.CLOSE_SHORT
            elif not any(deltas.values()):
                raise _invalid("receipt records no units; send quantities or close it as final")
            else:
                outcome = TransferAction.RECEIVE
            transition = resolve_transition(transfer.status, outcome)

            now = self._stamp(transfer)
            for item in transfer.items:
                item.quantity_received += deltas.get(str(item.id), 0)
            transfer.status = transition.next_status.value
            if transition.next_status != TransferStatus.IN_TRANSIT:
                transfer.received_at = now
                transfer.received_by = actor.actor_id
            if notes:
                transfer.receiving_notes = notes
            transfer.updated_at = now
            self._flush_versioned(transfer)
            self._apply_stock_effect(transfer, transition.stock_effect, deltas=deltas)

        return self._run(
            TransferAction.RECEIVE,
            transfer_id,
            version,
            actor,
            apply,
            metadata={"final": final, "quantities": {str(line.item_id): line.quantity for line in received_quantities}},
        )

    def cancel_transfer(
        self,
        transfer_id,
        version: int,
        reason: str | None,
        *,
        actor: ActorContext,
    ) -> Transfer:
        def apply(transfer: Transfer) -> None:
            self._require_participant(actor, transfer, {PARTICIPANT_SOURCE})
            transition = resolve_transition(transfer.status, TransferAction.CANCEL)
            now = self._stamp(transfer)
            transfer.status = transition.next_status.value
            transfer.cancellation_reason = (reason or "").strip() or "Cancelled by user"
            transfer.cancelled_at = now
            transfer.cancelled_by = actor.actor_id
            transfer.updated_at = now
            self._flush_versioned(transfer)
            self._apply_stock_effect(transfer, transition.stock_effect)

        return self._run(TransferAction.CANCEL, transfer_id, version, actor, apply)

    def expire_transfer(self, transfer_id, version: int, *, now: datetime | None = None) -> Transfer:
        actor = system_context()
        cutoff = now or self._clock()

        def apply(transfer: Transfer) -> None:
            transition = resolve_transition(transfer.status, TransferAction.EXPIRE)
            if transfer.expires_at is None or transfer.expires_at > cutoff:
                raise AppError(
                    ErrorCatalog.INVALID_STATE_TRANSITION,
                    details={"message": "transfer has not reached its expiry", "expires_at": transfer.expires_at},
                )
            stamp = self._stamp(transfer)
            transfer.status = transition.next_status.value
            transfer.expired_at = stamp
            transfer.updated_at = stamp
            self._flush_versioned(transfer)
            self._apply_stock_effect(transfer, transition.stock_effect)

        return self._run(TransferAction.EXPIRE, transfer_id, version, actor, apply, record_rejection=False)

    def sweep_expired(self, now: datetime | None = None, *, batch_size: int | None = None) -> int:
        """Expire every pending/approved transfer whose deadline is ``<= now``.

        Each transfer is expired in its own transaction against the version
        read by the sweep; transfers touched concurrently are skipped.
        """
        now = now or self._clock()
        limit = batch_size or settings.TRANSFER_SWEEP_BATCH_SIZE
        expired = 0
        examined = 0
        after = None
        while True:
            candidates = self.repo.list_expirable(now, statuses=EXPIRABLE_STATUSES, limit=limit, after=after)
            self.db.rollback()
            if not candidates:
                break
            last_id, _, last_expires_at = candidates[-1]
            after = (last_expires_at, last_id)
            for transfer_id, version, _ in candidates:
                examined += 1
                try:
                    self.expire_transfer(transfer_id, version, now=now)
                except AppError as exc:
                    if exc.code not in _SWEEP_SKIPPABLE:
                        raise
                    log_json(
                        logger,
                        {"event": "transfer_sweep_skipped", "transfer_id": str(transfer_id), "code": exc.code},
                    )
                    continue
                expired += 1
        metrics.increment_expired(expired)
        log_json(logger, {"event": "transfer_sweep", "now": now, "expired": expired, "examined": examined})
        return expired

    def request_follow_up(self, transfer_id, *, actor: ActorContext, notes: str | None = None) -> Transfer:
        """Open a new transfer for the units a partially received transfer never delivered."""
        original = self.get_transfer(transfer_id)
        try:
            self._require_participant(actor, original, {PARTICIPANT_SOURCE, PARTICIPANT_DESTINATION})
            if original.status != TransferStatus.PARTIALLY_RECEIVED.value:
                raise AppError(
                    ErrorCatalog.INVALID_STATE_TRANSITION,
                    details={
                        "message": "follow-up requires a partially received transfer",
                        "status": original.status,
                    },
                )
            existing = self.db.execute(
                select(Transfer.id).where(
                    Transfer.origin_transfer_id == original.id,
                    Transfer.status.not_in(
                        [
                            TransferStatus.REJECTED.value,
                            TransferStatus.CANCELLED.value,
                            TransferStatus.EXPIRED.value,
                        ]
                    ),
                )
            ).first()
            if existing is not None:
                raise _invalid("an open follow-up already exists", follow_up_id=str(existing.id))
            shortfall = [
                RequestedItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity_requested=(item.quantity_shipped or 0) - item.quantity_received,
                    notes=item.notes,
                )
                for item in original.items
                if (item.quantity_shipped or 0) - item.quantity_received > 0
            ]
            if not shortfall:
                raise _invalid("transfer has no shortfall to follow up")
        except AppError as exc:
            self.db.rollback()
            self._record_rejection("follow_up", original, actor, exc, before=self._snapshot(original))
            raise
        return self.request_transfer(
            from_location_id=original.from_location_id,
            to_location_id=original.to_location_id,
            items=shortfall,
            actor=actor,
            priority=original.priority,
            transfer_type=original.transfer_type,
            origin_sale_id=original.origin_sale_id,
            notes=notes or f"Follow-up of {original.transfer_number}",
            origin_transfer_id=original.id,
        )

    # --------------------------------------------------------------- internals

    def _build_request(
        self,
        *,
        from_location_id,
        to_location_id,
        items: list[RequestedItem],
        actor: ActorContext,
        priority: str,
        transfer_type: str,
        origin_sale_id: str | None,
        notes: str | None,
        expires_at: datetime | None,
        origin_transfer_id,
    ) -> Transfer:
        if priority not in {p.value for p in TransferPriority}:
            raise _invalid("unknown priority", priority=priority)
        if transfer_type not in {t.value for t in TransferType}:
            raise _invalid("unknown transfer_type", transfer_type=transfer_type)
        if not from_location_id or not to_location_id:
            raise _invalid("from_location_id and to_location_id are required")
        try:
            from_location_id = uuid.UUID(str(from_location_id))
            to_location_id = uuid.UUID(str(to_location_id))
        except ValueError as exc:
            raise _invalid("location ids must be UUIDs") from exc
        if from_location_id == to_location_id:
            raise _invalid("from_location_id and to_location_id must differ")
        if not items:
            raise _invalid("items must not be empty")

        seen_keys = set()
        for index, item in enumerate(items):
            if not item.product_id:
                raise _invalid("product_id is required", line=index)
            if not isinstance(item.quantity_requested, int) or item.quantity_requested <= 0:
                raise _invalid(
                    "quantity_requested must be a positive integer",
                    line=index,
                    product_id=item.product_id,
                    quantity_requested=item.quantity_requested,
                )
            key = (item.product_id, item.variant_id)
            if key in seen_keys:
                raise _invalid(
                    "duplicate product/variant line",
                    line=index,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                )
            seen_keys.add(key)

        for field_name, location_id in (("from_location_id", from_location_id), ("to_location_id", to_location_id)):
            location = self.locations.get_by_id(location_id)
            if location is None or not location.is_active:
                raise _invalid(f"{field_name} must be an active location", **{field_name: str(location_id)})

        if not actor.is_admin and actor.location_id not in {str(from_location_id), str(to_location_id)}:
            raise AppError(
                ErrorCatalog.FORBIDDEN_PARTICIPANT,
                details={"action": "request", "actor_location_id": actor.location_id},
            )

        now = self._clock()
        if expires_at is not None:
            if expires_at.tzinfo is not None:
                expires_at = expires_at.replace(tzinfo=None) - (expires_at.utcoffset() or timedelta(0))
            if expires_at <= now:
                raise _invalid("expires_at must be in the future", expires_at=expires_at.isoformat())
        elif self.expiration_hours > 0:
            expires_at = now + timedelta(hours=self.expiration_hours)

        transfer = Transfer(
            id=uuid.uuid4(),
            transfer_number=self._next_transfer_number(now),
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            status=TransferStatus.PENDING.value,
            priority=priority,
            transfer_type=transfer_type,
            origin_sale_id=origin_sale_id,
            origin_transfer_id=origin_transfer_id,
            requested_by=actor.actor_id,
            requested_at=now,
            expires_at=expires_at,
            request_notes=notes,
            reconciliation_required=False,
            created_at=now,
            updated_at=now,
        )
        transfer.items = [
            TransferItem(
                line_number=index + 1,
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity_requested=item.quantity_requested,
                quantity_received=0,
                notes=item.notes,
            )
            for index, item in enumerate(items)
        ]
        return transfer

    def _next_transfer_number(self, now: datetime) -> str:
        for _ in range(5):
            candidate = f"{settings.TRANSFER_NUMBER_PREFIX}-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"
            if not self.repo.number_exists(candidate):
                return candidate
        return f"{settings.TRANSFER_NUMBER_PREFIX}-{now:%Y%m%d}-{uuid.uuid4().hex.upper()}"

    def _approver_side(self) -> set[str]:
        if self.approver == PARTICIPANT_SOURCE:
            return {PARTICIPANT_SOURCE}
        return {PARTICIPANT_DESTINATION}

    @staticmethod
    def _require_participant(actor: ActorContext, transfer: Transfer, sides: set[str]) -> None:
        if actor.is_admin:
            return
        allowed = set()
        if PARTICIPANT_SOURCE in sides:
            allowed.add(str(transfer.from_location_id))
        if PARTICIPANT_DESTINATION in sides:
            allowed.add(str(transfer.to_location_id))
        if actor.location_id is None or actor.location_id not in allowed:
            raise AppError(
                ErrorCatalog.FORBIDDEN_PARTICIPANT,
                details={
                    "actor_location_id": actor.location_id,
                    "required": sorted(sides),
                    "transfer_id": str(transfer.id),
                },
            )

    @staticmethod
    def _quantities_by_item(
        transfer: Transfer,
        lines: list[QuantityLine],
        *,
        require_all: bool,
    ) -> dict[str, int]:
        known = {str(item.id) for item in transfer.items}
        quantities: dict[str, int] = {}
        for line in lines:
            item_id = str(line.item_id)
            if item_id not in known:
                raise _invalid("item does not belong to transfer", item_id=item_id)
            if item_id in quantities:
                raise _invalid("item listed more than once", item_id=item_id)
            if not isinstance(line.quantity, int):
                raise _invalid("quantity must be an integer", item_id=item_id)
            quantities[item_id] = line.quantity
        if require_all:
            missing = sorted(known - quantities.keys())
            if missing:
                raise _invalid("every item must be listed", missing_item_ids=missing)
        return quantities

    def _stamp(self, transfer: Transfer) -> datetime:
        """Current time, never earlier than any timestamp already on the transfer."""
        stamps = [
            transfer.requested_at,
            transfer.approved_at,
            transfer.rejected_at,
            transfer.shipped_at,
            transfer.received_at,
            transfer.cancelled_at,
            transfer.expired_at,
            transfer.updated_at,
        ]
        return max([self._clock(), *[stamp for stamp in stamps if stamp is not None]])

    def _apply_stock_effect(
        self,
        transfer: Transfer,
        effect: StockEffect,
        *,
        deltas: dict[str, int] | None = None,
    ) -> None:
        if effect == StockEffect.NONE:
            return
        for item in transfer.items:
            if effect == StockEffect.DEBIT_SOURCE:
                location_id, delta = transfer.from_location_id, -(item.quantity_approved or 0)
            elif effect == StockEffect.CREDIT_SOURCE:
                location_id, delta = transfer.from_location_id, item.quantity_approved or 0
            else:
                location_id, delta = transfer.to_location_id, (deltas or {}).get(str(item.id), 0)
            if delta == 0:
                continue
            try:
                self.ledger.apply_delta(
                    item.product_id,
                    item.variant_id,
                    location_id,
                    delta,
                    reason=MOVEMENT_REASON_TRANSFER,
                    transfer_id=transfer.id,
                    transfer_item_id=item.id,
                )
            except AppError as exc:
                if exc.code != ErrorCatalog.WOULD_GO_NEGATIVE.code:
                    raise
                metrics.increment_stock_rejection()
                if effect != StockEffect.DEBIT_SOURCE:
                    raise
                raise AppError(
                    ErrorCatalog.INSUFFICIENT_STOCK,
                    details={
                        "item_id": str(item.id),
                        "product_id": item.product_id,
                        "variant_id": item.variant_id,
                        "location_id": str(location_id),
                        "requested": -delta,
                        "available": (exc.details or {}).get("available"),
                    },
                ) from exc

    def _load_for_update(self, transfer_id) -> Transfer:
        transfer = (
            self.db.execute(
                select(Transfer)
                .options(selectinload(Transfer.items))
                .where(Transfer.id == transfer_id)
                .with_for_update(of=Transfer)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )
        if transfer is None:
            raise AppError(ErrorCatalog.NOT_FOUND, details={"transfer_id": str(transfer_id)})
        return transfer

    @staticmethod
    def _check_version(transfer: Transfer, expected_version: int) -> None:
        if transfer.version != expected_version:
            metrics.increment_conflict()
            raise AppError(
                ErrorCatalog.CONFLICT,
                details={
                    "transfer_id": str(transfer.id),
                    "expected_version": expected_version,
                    "current_version": transfer.version,
                    "transient": False,
                },
            )

    def _flush_versioned(self, transfer: Transfer) -> None:
        # Item-only changes leave the transfer row clean; the version must still move.
        flag_modified(transfer, "status")
        try:
            self.db.flush()
        except StaleDataError as exc:
            metrics.increment_conflict()
            raise AppError(
                ErrorCatalog.CONFLICT,
                details={"transfer_id": str(transfer.id), "transient": True},
            ) from exc

    def _run(
        self,
        action: TransferAction,
        transfer_id,
        expected_version: int,
        actor: ActorContext,
        apply,
        *,
        metadata: dict | None = None,
        record_rejection: bool = True,
    ) -> Transfer:
        transfer = None
        before = None
        try:
            transfer = self._load_for_update(transfer_id)
            before = self._snapshot(transfer)
            self._check_version(transfer, expected_version)
            apply(transfer)
            self._commit(transfer.id, prior_status=before["status"])
        except AppError as exc:
            self.db.rollback()
            if record_rejection:
                self._record_rejection(action.value, transfer or transfer_id, actor, exc, before, metadata)
            else:
                metrics.record_transition(action=action.value, result="rejected")
            raise
        self._record_success(action.value, transfer, actor, before, metadata)
        return transfer

    def _commit(self, transfer_id, *, prior_status: str | None) -> None:
        try:
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            metrics.increment_conflict()
            raise AppError(
                ErrorCatalog.CONFLICT,
                details={"transfer_id": str(transfer_id), "transient": True},
            ) from exc
        except SQLAlchemyError as exc:
            self._rollback_or_flag(transfer_id, prior_status, exc)
            raise

    def _rollback_or_flag(self, transfer_id, prior_status: str | None, exc: Exception) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed for transfer %s", transfer_id)
            if prior_status is not None:
                self._flag_for_reconciliation(
                    transfer_id,
                    prior_status,
                    note=f"rollback failed after {exc.__class__.__name__}",
                )

    def _flag_for_reconciliation(self, transfer_id, prior_status: str, *, note: str) -> None:
        with Session(bind=self.db.get_bind(), future=True) as repair:
            try:
                repair.execute(
                    update(Transfer)
                    .where(Transfer.id == transfer_id, Transfer.status == prior_status)
                    .values(
                        reconciliation_required=True,
                        reconciliation_note=note,
                        version=Transfer.version + 1,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                repair.commit()
            except SQLAlchemyError:
                repair.rollback()
                logger.exception("Could not flag transfer %s for reconciliation", transfer_id)
                return
        log_json(
            logger,
            {"event": "transfer_reconciliation_flagged", "transfer_id": str(transfer_id), "note": note},
            level=logging.ERROR,
        )

    @staticmethod
    def _snapshot(transfer: Transfer) -> dict:
        return {
            "status": transfer.status,
            "version": transfer.version,
            "items": [
                {
                    "id": str(item.id),
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "quantity_requested": item.quantity_requested,
                    "quantity_approved": item.quantity_approved,
                    "quantity_shipped": item.quantity_shipped,
                    "quantity_received": item.quantity_received,
                }
                for item in transfer.items
            ],
        }

    def _record_success(
        self,
        action: str,
        transfer: Transfer,
        actor: ActorContext,
        before: dict | None,
        metadata: dict | None = None,
    ) -> None:
        after = self._snapshot(transfer)
        metrics.record_transition(action=action, result="success")
        log_json(
            logger,
            {
                "event": "transfer_transition",
                "action": action,
                "result": "success",
                "transfer_id": str(transfer.id),
                "transfer_number": transfer.transfer_number,
                "from_status": (before or {}).get("status"),
                "to_status": after["status"],
                "version": after["version"],
                "actor": actor.actor_id,
                "trace_id": actor.trace_id or None,
            },
        )
        self.audit.record_event(
            AuditEventPayload(
                actor=actor.actor_id,
                actor_location_id=actor.location_id,
                trace_id=actor.trace_id or None,
                action=f"transfer.{action}",
                entity_type="transfer",
                entity_id=str(transfer.id),
                before=before,
                after=after,
                metadata=metadata,
                result="success",
            )
        )

    def _record_rejection(
        self,
        action: str,
        transfer,
        actor: ActorContext,
        exc: AppError,
        before: dict | None,
        metadata: dict | None = None,
    ) -> None:
        entity_id = str(transfer.id) if isinstance(transfer, Transfer) else (str(transfer) if transfer else None)
        metrics.record_transition(action=action, result="rejected")
        log_json(
            logger,
            {
                "event": "transfer_transition",
                "action": action,
                "result": "rejected",
                "transfer_id": entity_id,
                "code": exc.code,
                "details": exc.details,
                "actor": actor.actor_id,
                "trace_id": actor.trace_id or None,
            },
            level=logging.WARNING,
        )
        self.audit.record_event(
            AuditEventPayload(
                actor=actor.actor_id,
                actor_location_id=actor.location_id,
                trace_id=actor.trace_id or None,
                action=f"transfer.{action}",
                entity_type="transfer",
                entity_id=entity_id,
                before=before,
                after=None,
                metadata={**(metadata or {}), "error_code": exc.code, "error_details": exc.details},
                result="rejected",
            )
        )
