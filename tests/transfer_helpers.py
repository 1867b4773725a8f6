import uuid
from datetime import datetime

from sqlalchemy import select

from app.stocklink.core.context import build_actor_context
from app.stocklink.db.models import Location, StockLevel, StockMovement
from app.stocklink.services.transfer_workflow import QuantityLine, RequestedItem, TransferWorkflow


NOW = datetime(2026, 3, 2, 9, 0, 0)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def seed_locations(db_session, *names: str) -> list[Location]:
    locations = [Location(id=uuid.uuid4(), name=name, is_active=True) for name in (names or ("Store A", "Store B"))]
    db_session.add_all(locations)
    db_session.commit()
    return locations


def seed_stock(db_session, location: Location, product_id: str, quantity: int, variant_id: str | None = None):
    level = StockLevel(
        id=uuid.uuid4(),
        product_id=product_id,
        variant_id=variant_id,
        location_id=location.id,
        quantity=quantity,
        updated_at=NOW,
    )
    db_session.add(level)
    db_session.commit()
    return level


def stock_of(db_session, location: Location, product_id: str, variant_id: str | None = None) -> int:
    db_session.expire_all()
    query = select(StockLevel.quantity).where(
        StockLevel.product_id == product_id,
        StockLevel.location_id == location.id,
    )
    if variant_id is None:
        query = query.where(StockLevel.variant_id.is_(None))
    else:
        query = query.where(StockLevel.variant_id == variant_id)
    return int(db_session.execute(query).scalar_one_or_none() or 0)


def movements_for(db_session, transfer_id) -> list[StockMovement]:
    db_session.expire_all()
    return (
        db_session.execute(
            select(StockMovement)
            .where(StockMovement.transfer_id == transfer_id)
            .order_by(StockMovement.created_at, StockMovement.delta)
        )
        .scalars()
        .all()
    )


def actor_at(location: Location | None, actor_id: str = "clerk-1", role: str | None = None):
    return build_actor_context(
        actor_id=actor_id,
        location_id=str(location.id) if location is not None else None,
        role=role,
        trace_id="trace-test",
    )


def headers_for(location: Location | None, actor_id: str = "clerk-1", role: str | None = None) -> dict:
    headers = {"X-Actor-Id": actor_id}
    if location is not None:
        headers["X-Location-Id"] = str(location.id)
    if role:
        headers["X-Actor-Role"] = role
    return headers


def workflow(db_session, clock: FixedClock | None = None, **kwargs) -> TransferWorkflow:
    return TransferWorkflow(db_session, clock=clock or FixedClock(), **kwargs)


def request_transfer(
    db_session,
    source: Location,
    destination: Location,
    lines: list[tuple],
    *,
    clock: FixedClock | None = None,
    **kwargs,
):
    items = [
        RequestedItem(product_id=line[0], quantity_requested=line[1], variant_id=line[2] if len(line) > 2 else None)
        for line in lines
    ]
    return workflow(db_session, clock).request_transfer(
        from_location_id=source.id,
        to_location_id=destination.id,
        items=items,
        actor=actor_at(destination, "requester"),
        **kwargs,
    )


def quantities(transfer, *amounts: int) -> list[QuantityLine]:
    return [QuantityLine(item_id=str(item.id), quantity=amount) for item, amount in zip(transfer.items, amounts)]


def approve(db_session, transfer, destination: Location, *amounts: int, clock: FixedClock | None = None):
    return workflow(db_session, clock).approve_transfer(
        transfer.id,
        transfer.version,
        quantities(transfer, *amounts),
        actor=actor_at(destination, "manager"),
    )


def ship(db_session, transfer, source: Location, clock: FixedClock | None = None):
    return workflow(db_session, clock).mark_in_transit(transfer.id, transfer.version, actor=actor_at(source, "shipper"))


def receive(db_session, transfer, destination: Location, *amounts: int, final: bool = False, clock=None):
    return workflow(db_session, clock).receive_transfer(
        transfer.id,
        transfer.version,
        quantities(transfer, *amounts),
        actor=actor_at(destination, "receiver"),
        final=final,
    )
