import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.db.models import Location, Transfer
from app.stocklink.services.transfer_workflow import RequestedItem
from tests.transfer_helpers import NOW, FixedClock, actor_at, request_transfer, seed_locations, workflow


def _request(db_session, source, destination, items, **kwargs):
    return workflow(db_session).request_transfer(
        from_location_id=source.id,
        to_location_id=destination.id,
        items=items,
        actor=kwargs.pop("actor", actor_at(destination)),
        **kwargs,
    )


def _transfer_count(db_session) -> int:
    return db_session.execute(select(func.count()).select_from(Transfer)).scalar_one()


def test_request_creates_pending_transfer(db_session):
    source, destination = seed_locations(db_session)

    transfer = request_transfer(db_session, source, destination, [("P-1", 20), ("P-2", 4, "P-2-RED")])

    assert transfer.status == "pending"
    assert transfer.version == 1
    assert transfer.requested_at == NOW
    assert transfer.expires_at == NOW + timedelta(hours=24)
    assert transfer.transfer_number.startswith("TRF-20260302-")
    assert [item.line_number for item in transfer.items] == [1, 2]
    assert [item.quantity_requested for item in transfer.items] == [20, 4]
    assert all(item.quantity_approved is None for item in transfer.items)
    assert all(item.quantity_received == 0 for item in transfer.items)


def test_request_does_not_check_stock(db_session):
    source, destination = seed_locations(db_session)

    transfer = request_transfer(db_session, source, destination, [("P-EMPTY", 500)])

    assert transfer.status == "pending"


@pytest.mark.parametrize(
    "items",
    [
        [],
        [RequestedItem(product_id="P-1", quantity_requested=0)],
        [RequestedItem(product_id="P-1", quantity_requested=-3)],
        [RequestedItem(product_id="", quantity_requested=1)],
        [RequestedItem(product_id="P-1", quantity_requested=1), RequestedItem(product_id="P-1", quantity_requested=2)],
    ],
)
def test_request_rejects_invalid_items(db_session, items):
    source, destination = seed_locations(db_session)

    with pytest.raises(AppError) as exc_info:
        _request(db_session, source, destination, items)

    assert exc_info.value.code == ErrorCatalog.INVALID_INPUT.code
    assert _transfer_count(db_session) == 0


def test_request_rejects_same_location(db_session):
    source, _ = seed_locations(db_session)

    with pytest.raises(AppError) as exc_info:
        _request(db_session, source, source, [RequestedItem(product_id="P-1", quantity_requested=1)])

    assert exc_info.value.code == ErrorCatalog.INVALID_INPUT.code


def test_request_rejects_inactive_location(db_session):
    source, destination = seed_locations(db_session)
    destination.is_active = False
    db_session.commit()

    with pytest.raises(AppError) as exc_info:
        _request(
            db_session,
            source,
            destination,
            [RequestedItem(product_id="P-1", quantity_requested=1)],
            actor=actor_at(source),
        )

    assert exc_info.value.code == ErrorCatalog.INVALID_INPUT.code
    assert "to_location_id" in exc_info.value.details


def test_request_rejects_unknown_location(db_session):
    source, _ = seed_locations(db_session)
    ghost = Location(id=uuid.uuid4(), name="Ghost", is_active=True)

    with pytest.raises(AppError) as exc_info:
        _request(
            db_session,
            source,
            ghost,
            [RequestedItem(product_id="P-1", quantity_requested=1)],
            actor=actor_at(source),
        )

    assert exc_info.value.code == ErrorCatalog.INVALID_INPUT.code


def test_request_by_outsider_is_forbidden(db_session):
    source, destination, outsider = seed_locations(db_session, "A", "B", "C")

    with pytest.raises(AppError) as exc_info:
        _request(
            db_session,
            source,
            destination,
            [RequestedItem(product_id="P-1", quantity_requested=1)],
            actor=actor_at(outsider),
        )

    assert exc_info.value.code == ErrorCatalog.FORBIDDEN_PARTICIPANT.code


def test_request_with_explicit_expiry(db_session):
    source, destination = seed_locations(db_session)
    deadline = datetime(2026, 3, 2, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    transfer = _request(
        db_session,
        source,
        destination,
        [RequestedItem(product_id="P-1", quantity_requested=1)],
        expires_at=deadline,
        priority="urgent",
        transfer_type="pos_request",
        origin_sale_id="SALE-77",
    )

    assert transfer.expires_at == datetime(2026, 3, 2, 10, 0)
    assert transfer.priority == "urgent"
    assert transfer.transfer_type == "pos_request"
    assert transfer.origin_sale_id == "SALE-77"


def test_request_rejects_past_expiry(db_session):
    source, destination = seed_locations(db_session)

    with pytest.raises(AppError) as exc_info:
        _request(
            db_session,
            source,
            destination,
            [RequestedItem(product_id="P-1", quantity_requested=1)],
            expires_at=NOW - timedelta(minutes=1),
        )

    assert exc_info.value.code == ErrorCatalog.INVALID_INPUT.code


def test_request_without_default_expiry(db_session):
    source, destination = seed_locations(db_session)

    transfer = workflow(db_session, FixedClock(), expiration_hours=0).request_transfer(
        from_location_id=source.id,
        to_location_id=destination.id,
        items=[RequestedItem(product_id="P-1", quantity_requested=1)],
        actor=actor_at(destination),
    )

    assert transfer.expires_at is None
