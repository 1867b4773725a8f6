from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from app.stocklink.core.metrics import metrics
from app.stocklink.db.models import Location, StockLevel, StockMovement, Transfer
from app.stocklink.repos.stock import MOVEMENT_REASON_TRANSFER
from app.stocklink.services.transfer_states import TransferStatus


SEVERITY_CRITICAL = "CRITICAL"
SEVERITY_WARN = "WARN"

_SOURCE_DEBITED = {
    TransferStatus.APPROVED.value,
    TransferStatus.IN_TRANSIT.value,
    TransferStatus.RECEIVED.value,
    TransferStatus.PARTIALLY_RECEIVED.value,
}
_TIMESTAMP_BY_STATUS = {
    TransferStatus.APPROVED.value: ("approved_at",),
    TransferStatus.REJECTED.value: ("rejected_at",),
    TransferStatus.IN_TRANSIT.value: ("approved_at", "shipped_at"),
    TransferStatus.RECEIVED.value: ("approved_at", "shipped_at", "received_at"),
    TransferStatus.PARTIALLY_RECEIVED.value: ("approved_at", "shipped_at", "received_at"),
    TransferStatus.CANCELLED.value: ("cancelled_at",),
    TransferStatus.EXPIRED.value: ("expired_at",),
}


@dataclass(frozen=True)
class IntegrityFinding:
    check_id: str
    severity: str
    location_id: str
    message: str
    entity: str
    entity_id: str | None
    details: dict


def resolve_locations(db, location: str) -> list[str]:
    if location.lower() != "all":
        return [str(uuid.UUID(location))]
    return [str(row.id) for row in db.execute(select(Location.id).order_by(Location.name)).all()]


def _outgoing_transfers(db, location_id: str) -> list[Transfer]:
    # Each transfer is checked once, from its source location.
    return (
        db.execute(
            select(Transfer)
            .options(selectinload(Transfer.items))
            .where(Transfer.from_location_id == location_id)
            .order_by(Transfer.requested_at.asc())
        )
        .scalars()
        .all()
    )


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _report(check_id: str, findings: list[IntegrityFinding]) -> list[IntegrityFinding]:
    if findings:
        metrics.increment_invariant_violation(check_id, len(findings))
    return findings


def check_item_quantity_ordering(db, location_id: str, transfers: list[Transfer]) -> list[IntegrityFinding]:
    findings = []
    for transfer in transfers:
        for item in transfer.items:
            approved = item.quantity_approved
            shipped = item.quantity_shipped
            ordered = item.quantity_received >= 0 and item.quantity_requested > 0
            if approved is not None:
                ordered = ordered and 0 <= approved <= item.quantity_requested
            if shipped is not None:
                ordered = ordered and approved is not None and 0 <= shipped <= approved
            ordered = ordered and item.quantity_received <= (shipped or 0)
            if ordered:
                continue
            findings.append(
                IntegrityFinding(
                    check_id="transfer_item_quantities",
                    severity=SEVERITY_CRITICAL,
                    location_id=location_id,
                    message="Transfer item quantities out of order (received <= shipped <= approved <= requested).",
                    entity="transfer_items",
                    entity_id=str(item.id),
                    details={
                        "transfer_id": str(transfer.id),
                        "quantity_requested": item.quantity_requested,
                        "quantity_approved": approved,
                        "quantity_shipped": shipped,
                        "quantity_received": item.quantity_received,
                    },
                )
            )
    return _report("transfer_item_quantities", findings)


def _status_consistent(transfer: Transfer) -> bool:
    status = transfer.status
    if status not in {s.value for s in TransferStatus}:
        return False
    for field_name in _TIMESTAMP_BY_STATUS.get(status, ()):
        if getattr(transfer, field_name) is None:
            return False
    items = transfer.items
    if status == TransferStatus.PENDING.value:
        return all(item.quantity_approved is None and item.quantity_shipped is None for item in items)
    if status == TransferStatus.APPROVED.value:
        return all(item.quantity_approved is not None and item.quantity_shipped is None for item in items)
    if status == TransferStatus.IN_TRANSIT.value:
        return all(item.quantity_shipped == item.quantity_approved for item in items)
    if status == TransferStatus.RECEIVED.value:
        return all(item.quantity_received == (item.quantity_shipped or 0) for item in items)
    if status == TransferStatus.PARTIALLY_RECEIVED.value:
        return any(item.quantity_received < (item.quantity_shipped or 0) for item in items)
    return all(item.quantity_shipped is None and item.quantity_received == 0 for item in items)


def check_status_consistency(db, location_id: str, transfers: list[Transfer]) -> list[IntegrityFinding]:
    findings = []
    for transfer in transfers:
        if _status_consistent(transfer):
            continue
        findings.append(
            IntegrityFinding(
                check_id="transfer_status_consistency",
                severity=SEVERITY_CRITICAL,
                location_id=location_id,
                message="Transfer status disagrees with its quantities or timestamps.",
                entity="transfers",
                entity_id=str(transfer.id),
                details={
                    "status": transfer.status,
                    "approved_at": _format_datetime(transfer.approved_at),
                    "shipped_at": _format_datetime(transfer.shipped_at),
                    "received_at": _format_datetime(transfer.received_at),
                },
            )
        )
    return _report("transfer_status_consistency", findings)


def _movement_sums(db, transfer_ids: list) -> dict[tuple[str, str], int]:
    if not transfer_ids:
        return {}
    rows = db.execute(
        select(
            StockMovement.transfer_id,
            StockMovement.location_id,
            func.sum(StockMovement.delta).label("net"),
        )
        .where(StockMovement.transfer_id.in_(transfer_ids))
        .where(StockMovement.reason == MOVEMENT_REASON_TRANSFER)
        .group_by(StockMovement.transfer_id, StockMovement.location_id)
    ).all()
    return {(str(row.transfer_id), str(row.location_id)): int(row.net or 0) for row in rows}


def check_movement_balance(db, location_id: str, transfers: list[Transfer]) -> list[IntegrityFinding]:
    sums = _movement_sums(db, [transfer.id for transfer in transfers])
    findings = []
    for transfer in transfers:
        transfer_id = str(transfer.id)
        expected_source = 0
        if transfer.status in _SOURCE_DEBITED:
            expected_source = -sum(item.quantity_approved or 0 for item in transfer.items)
        expected_destination = sum(item.quantity_received for item in transfer.items)
        actual_source = sums.get((transfer_id, str(transfer.from_location_id)), 0)
        actual_destination = sums.get((transfer_id, str(transfer.to_location_id)), 0)
        if actual_source == expected_source and actual_destination == expected_destination:
            continue
        findings.append(
            IntegrityFinding(
                check_id="transfer_movement_balance",
                severity=SEVERITY_CRITICAL,
                location_id=location_id,
                message="Stock movements do not match the transfer's approved/received quantities.",
                entity="transfers",
                entity_id=transfer_id,
                details={
                    "status": transfer.status,
                    "expected_source_delta": expected_source,
                    "actual_source_delta": actual_source,
                    "expected_destination_delta": expected_destination,
                    "actual_destination_delta": actual_destination,
                },
            )
        )
    return _report("transfer_movement_balance", findings)


def check_reconciliation_flags(db, location_id: str) -> list[IntegrityFinding]:
    rows = db.execute(
        select(Transfer.id, Transfer.status, Transfer.reconciliation_note)
        .where(Transfer.from_location_id == location_id)
        .where(Transfer.reconciliation_required.is_(True))
    ).all()
    findings = [
        IntegrityFinding(
            check_id="transfer_reconciliation_required",
            severity=SEVERITY_WARN,
            location_id=location_id,
            message="Transfer flagged for manual reconciliation.",
            entity="transfers",
            entity_id=str(row.id),
            details={"status": row.status, "note": row.reconciliation_note},
        )
        for row in rows
    ]
    return _report("transfer_reconciliation_required", findings)


def check_negative_stock(db, location_id: str) -> list[IntegrityFinding]:
    rows = db.execute(
        select(StockLevel.id, StockLevel.product_id, StockLevel.variant_id, StockLevel.quantity)
        .where(StockLevel.location_id == location_id)
        .where(StockLevel.quantity < 0)
    ).all()
    findings = [
        IntegrityFinding(
            check_id="negative_stock",
            severity=SEVERITY_CRITICAL,
            location_id=location_id,
            message="Stock level below zero.",
            entity="stock_levels",
            entity_id=str(row.id),
            details={"product_id": row.product_id, "variant_id": row.variant_id, "quantity": row.quantity},
        )
        for row in rows
    ]
    return _report("negative_stock", findings)


def run_integrity_checks(db, location_id: str) -> list[IntegrityFinding]:
    transfers = _outgoing_transfers(db, location_id)
    findings: list[IntegrityFinding] = []
    findings.extend(check_item_quantity_ordering(db, location_id, transfers))
    findings.extend(check_status_consistency(db, location_id, transfers))
    findings.extend(check_movement_balance(db, location_id, transfers))
    findings.extend(check_reconciliation_flags(db, location_id))
    findings.extend(check_negative_stock(db, location_id))
    return findings
