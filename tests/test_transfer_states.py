import pytest

from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.services.transfer_states import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    StockEffect,
    TransferAction,
    TransferStatus,
    allowed_actions,
    is_terminal,
    resolve_transition,
)


def test_terminal_statuses_have_no_outgoing_transitions():
    for status in TERMINAL_STATUSES:
        assert allowed_actions(status) == []
        assert is_terminal(status)


def test_every_non_terminal_status_has_an_exit():
    for status in TransferStatus:
        if status in TERMINAL_STATUSES:
            continue
        assert allowed_actions(status), status


def test_stock_effects_follow_decrement_at_approval_policy():
    assert TRANSITIONS[(TransferStatus.PENDING, TransferAction.APPROVE)].stock_effect == StockEffect.DEBIT_SOURCE
    assert TRANSITIONS[(TransferStatus.APPROVED, TransferAction.SHIP)].stock_effect == StockEffect.NONE
    assert TRANSITIONS[(TransferStatus.APPROVED, TransferAction.CANCEL)].stock_effect == StockEffect.CREDIT_SOURCE
    assert TRANSITIONS[(TransferStatus.APPROVED, TransferAction.EXPIRE)].stock_effect == StockEffect.CREDIT_SOURCE
    assert TRANSITIONS[(TransferStatus.PENDING, TransferAction.CANCEL)].stock_effect == StockEffect.NONE
    assert TRANSITIONS[(TransferStatus.PENDING, TransferAction.EXPIRE)].stock_effect == StockEffect.NONE


def test_receipt_outcomes():
    assert resolve_transition("in_transit", TransferAction.RECEIVE).next_status == TransferStatus.IN_TRANSIT
    assert resolve_transition("in_transit", TransferAction.COMPLETE_RECEIPT).next_status == TransferStatus.RECEIVED
    assert (
        resolve_transition("in_transit", TransferAction.CLOSE_SHORT).next_status
        == TransferStatus.PARTIALLY_RECEIVED
    )


@pytest.mark.parametrize(
    "status,action",
    [
        ("pending", TransferAction.SHIP),
        ("pending", TransferAction.RECEIVE),
        ("approved", TransferAction.APPROVE),
        ("approved", TransferAction.REJECT),
        ("in_transit", TransferAction.CANCEL),
        ("in_transit", TransferAction.EXPIRE),
        ("received", TransferAction.CANCEL),
        ("rejected", TransferAction.APPROVE),
    ],
)
def test_unlisted_pairs_are_invalid(status, action):
    with pytest.raises(AppError) as exc_info:
        resolve_transition(status, action)
    assert exc_info.value.code == ErrorCatalog.INVALID_STATE_TRANSITION.code
    assert exc_info.value.details["status"] == status
    assert exc_info.value.details["action"] == action.value


def test_terminal_flag_in_rejection_details():
    with pytest.raises(AppError) as exc_info:
        resolve_transition("cancelled", TransferAction.SHIP)
    assert exc_info.value.details["terminal"] is True
    assert exc_info.value.details["allowed_actions"] == []
