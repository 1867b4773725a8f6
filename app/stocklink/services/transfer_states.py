"""Transfer state machine.

Every status change goes through :data:`TRANSITIONS`; a ``(status, action)``
pair that is not in the table is an invalid transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.stocklink.core.error_catalog import AppError, ErrorCatalog


class TransferStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    PARTIALLY_RECEIVED = "partially_received"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class TransferAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    SHIP = "ship"
    RECEIVE = "receive"
    COMPLETE_RECEIPT = "complete_receipt"
    CLOSE_SHORT = "close_short"
    CANCEL = "cancel"
    EXPIRE = "expire"


class StockEffect(str, Enum):
    NONE = "none"
    DEBIT_SOURCE = "debit_source"
    CREDIT_SOURCE = "credit_source"
    CREDIT_DESTINATION = "credit_destination"


class TransferPriority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class TransferType(str, Enum):
    MANUAL = "manual"
    POS_REQUEST = "pos_request"


@dataclass(frozen=True)
class Transition:
    next_status: TransferStatus
    stock_effect: StockEffect


TRANSITIONS: dict[tuple[TransferStatus, TransferAction], Transition] = {
    (TransferStatus.PENDING, TransferAction.APPROVE): Transition(TransferStatus.APPROVED, StockEffect.DEBIT_SOURCE),
    (TransferStatus.PENDING, TransferAction.REJECT): Transition(TransferStatus.REJECTED, StockEffect.NONE),
    (TransferStatus.PENDING, TransferAction.CANCEL): Transition(TransferStatus.CANCELLED, StockEffect.NONE),
    (TransferStatus.PENDING, TransferAction.EXPIRE): Transition(TransferStatus.EXPIRED, StockEffect.NONE),
    (TransferStatus.APPROVED, TransferAction.SHIP): Transition(TransferStatus.IN_TRANSIT, StockEffect.NONE),
    (TransferStatus.APPROVED, TransferAction.CANCEL): Transition(TransferStatus.CANCELLED, StockEffect.CREDIT_SOURCE),
    (TransferStatus.APPROVED, TransferAction.EXPIRE): Transition(TransferStatus.EXPIRED, StockEffect.CREDIT_SOURCE),
    (TransferStatus.IN_TRANSIT, TransferAction.RECEIVE): Transition(
        TransferStatus.IN_TRANSIT, StockEffect.CREDIT_DESTINATION
    ),
    (TransferStatus.IN_TRANSIT, TransferAction.COMPLETE_RECEIPT): Transition(
        TransferStatus.RECEIVED, StockEffect.CREDIT_DESTINATION
    ),
    (TransferStatus.IN_TRANSIT, TransferAction.CLOSE_SHORT): Transition(
        TransferStatus.PARTIALLY_RECEIVED, StockEffect.CREDIT_DESTINATION
    ),
}

TERMINAL_STATUSES = frozenset(
    {
        TransferStatus.RECEIVED,
        TransferStatus.PARTIALLY_RECEIVED,
        TransferStatus.REJECTED,
        TransferStatus.CANCELLED,
        TransferStatus.EXPIRED,
    }
)

EXPIRABLE_STATUSES = (TransferStatus.PENDING.value, TransferStatus.APPROVED.value)


def allowed_actions(status: TransferStatus | str) -> list[str]:
    status = TransferStatus(status)
    return [action.value for (current, action) in TRANSITIONS if current == status]


def is_terminal(status: TransferStatus | str) -> bool:
    return TransferStatus(status) in TERMINAL_STATUSES


def resolve_transition(status: TransferStatus | str, action: TransferAction) -> Transition:
    status = TransferStatus(status)
    transition = TRANSITIONS.get((status, action))
    if transition is None:
        raise AppError(
            ErrorCatalog.INVALID_STATE_TRANSITION,
            details={
                "status": status.value,
                "action": action.value,
                "terminal": status in TERMINAL_STATUSES,
                "allowed_actions": allowed_actions(status),
            },
        )
    return transition
