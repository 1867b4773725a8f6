import pytest
from sqlalchemy import select

from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.db.models import AuditEvent
from tests.transfer_helpers import (
    actor_at,
    approve,
    movements_for,
    request_transfer,
    seed_locations,
    seed_stock,
    ship,
    stock_of,
    workflow,
)


def test_cancel_approved_restores_source_stock(db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 100)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])
    approve(db_session, transfer, destination, 10)
    assert stock_of(db_session, source, "P-1") == 90

    cancelled = workflow(db_session).cancel_transfer(
        transfer.id, transfer.version, "Truck unavailable", actor=actor_at(source)
    )

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Truck unavailable"
    assert cancelled.cancelled_by == "clerk-1"
    assert stock_of(db_session, source, "P-1") == 100
    assert sorted(m.delta for m in movements_for(db_session, transfer.id)) == [-10, 10]


def test_cancel_pending_touches_no_stock(db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 100)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])

    cancelled = workflow(db_session).cancel_transfer(transfer.id, transfer.version, None, actor=actor_at(source))

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Cancelled by user"
    assert stock_of(db_session, source, "P-1") == 100
    assert movements_for(db_session, transfer.id) == []


def test_cancel_in_transit_is_invalid(db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 100)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])
    approve(db_session, transfer, destination, 10)
    ship(db_session, transfer, source)

    with pytest.raises(AppError) as exc_info:
        workflow(db_session).cancel_transfer(transfer.id, transfer.version, "late", actor=actor_at(source))

    assert exc_info.value.code == ErrorCatalog.INVALID_STATE_TRANSITION.code
    assert stock_of(db_session, source, "P-1") == 90


def test_cancel_by_destination_is_forbidden_but_admin_may(db_session):
    source, destination = seed_locations(db_session)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])

    with pytest.raises(AppError) as exc_info:
        workflow(db_session).cancel_transfer(transfer.id, transfer.version, "no", actor=actor_at(destination))
    assert exc_info.value.code == ErrorCatalog.FORBIDDEN_PARTICIPANT.code

    cancelled = workflow(db_session).cancel_transfer(
        transfer.id, transfer.version, "ops", actor=actor_at(None, "root", role="admin")
    )
    assert cancelled.status == "cancelled"


def test_reject_pending(db_session):
    source, destination = seed_locations(db_session)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])

    rejected = workflow(db_session).reject_transfer(
        transfer.id, transfer.version, "  Not needed  ", actor=actor_at(destination)
    )

    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "Not needed"
    assert rejected.rejected_by == "clerk-1"


def test_reject_requires_reason(db_session):
    source, destination = seed_locations(db_session)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])

    with pytest.raises(AppError) as exc_info:
        workflow(db_session).reject_transfer(transfer.id, transfer.version, "   ", actor=actor_at(destination))

    assert exc_info.value.code == ErrorCatalog.INVALID_INPUT.code


def test_terminal_transfer_refuses_writes_and_audits_attempt(db_session):
    source, destination = seed_locations(db_session)
    transfer = request_transfer(db_session, source, destination, [("P-1", 10)])
    workflow(db_session).reject_transfer(transfer.id, transfer.version, "No", actor=actor_at(destination))

    with pytest.raises(AppError) as exc_info:
        workflow(db_session).cancel_transfer(transfer.id, transfer.version, "again", actor=actor_at(source))

    assert exc_info.value.code == ErrorCatalog.INVALID_STATE_TRANSITION.code
    assert exc_info.value.details["terminal"] is True
    events = (
        db_session.execute(
            select(AuditEvent).where(AuditEvent.entity_id == str(transfer.id)).order_by(AuditEvent.created_at)
        )
        .scalars()
        .all()
    )
    results = {(event.action, event.result) for event in events}
    assert ("transfer.request", "success") in results
    assert ("transfer.reject", "success") in results
    assert ("transfer.cancel", "rejected") in results
    rejected = next(event for event in events if event.result == "rejected")
    assert rejected.event_metadata["error_code"] == "INVALID_STATE_TRANSITION"
