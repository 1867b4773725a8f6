import uuid

from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.db.models import Transfer
from app.stocklink.services.transfer_workflow import TransferWorkflow
from tests.transfer_helpers import actor_at, headers_for, quantities, seed_locations, seed_stock, stock_of, workflow


def _create(client, source, destination, *, headers=None, items=None, **extra):
    payload = {
        "from_location_id": str(source.id),
        "to_location_id": str(destination.id),
        "items": items or [{"product_id": "P-1", "quantity_requested": 20}],
        **extra,
    }
    return client.post("/stocklink/transfers", json=payload, headers=headers or headers_for(destination))


def _item_lines(body, *amounts):
    return [{"item_id": item["id"], "quantity": amount} for item, amount in zip(body["items"], amounts)]


def test_full_lifecycle_over_http(client, db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 50)

    created = _create(client, source, destination)
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending"
    assert body["version"] == 1
    assert body["from_location_name"] == "Store A"
    assert body["allowed_actions"] == ["approve", "reject", "cancel", "expire"]
    transfer_id = body["id"]

    approved = client.post(
        f"/stocklink/transfers/{transfer_id}/approve",
        json={"version": 1, "items": _item_lines(body, 20)},
        headers=headers_for(destination, "manager"),
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert stock_of(db_session, source, "P-1") == 30

    shipped = client.post(
        f"/stocklink/transfers/{transfer_id}/ship",
        json={"version": 2, "notes": "Van 3"},
        headers=headers_for(source, "shipper"),
    )
    assert shipped.status_code == 200
    assert shipped.json()["shipping_notes"] == "Van 3"

    partial = client.post(
        f"/stocklink/transfers/{transfer_id}/receive",
        json={"version": 3, "items": _item_lines(body, 12)},
        headers=headers_for(destination, "receiver"),
    )
    assert partial.status_code == 200
    assert partial.json()["items"][0]["quantity_outstanding"] == 8

    done = client.post(
        f"/stocklink/transfers/{transfer_id}/receive",
        json={"version": 4, "items": _item_lines(body, 8)},
        headers=headers_for(destination, "receiver"),
    )
    assert done.status_code == 200
    assert done.json()["status"] == "received"
    assert done.json()["allowed_actions"] == []
    assert stock_of(db_session, destination, "P-1") == 20

    fetched = client.get(f"/stocklink/transfers/{transfer_id}", headers=headers_for(source))
    assert fetched.status_code == 200
    assert fetched.json()["version"] == 5

    events = client.get(f"/stocklink/transfers/{transfer_id}/events", headers=headers_for(source))
    assert events.status_code == 200
    assert [row["action"] for row in events.json()["rows"]] == [
        "transfer.request",
        "transfer.approve",
        "transfer.ship",
        "transfer.receive",
        "transfer.receive",
    ]


def test_error_envelope_for_insufficient_stock(client, db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 10)
    body = _create(client, source, destination, items=[{"product_id": "P-1", "quantity_requested": 15}]).json()

    response = client.post(
        f"/stocklink/transfers/{body['id']}/approve",
        json={"version": 1, "items": _item_lines(body, 15)},
        headers=headers_for(destination),
    )

    assert response.status_code == 409
    payload = response.json()
    assert payload["code"] == ErrorCatalog.INSUFFICIENT_STOCK.code
    assert payload["details"]["available"] == 10
    assert payload["trace_id"]
    assert response.headers["X-Trace-ID"] == payload["trace_id"]


def test_stale_version_returns_conflict(client, db_session):
    source, destination = seed_locations(db_session)
    body = _create(client, source, destination).json()

    response = client.post(
        f"/stocklink/transfers/{body['id']}/reject",
        json={"version": 9, "reason": "no"},
        headers=headers_for(destination),
    )

    assert response.status_code == 409
    assert response.json()["code"] == ErrorCatalog.CONFLICT.code


def test_lost_commit_race_ends_as_plain_conflict(client, db_session, monkeypatch):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 50)
    body = _create(client, source, destination).json()
    real_approve = TransferWorkflow.approve_transfer
    calls = []

    def approve_losing_race(self, transfer_id, version, lines, **kwargs):
        calls.append(version)
        if len(calls) == 1:
            transfer = db_session.get(Transfer, uuid.UUID(body["id"]))
            workflow(db_session).approve_transfer(
                transfer.id, transfer.version, quantities(transfer, 20), actor=actor_at(destination, "rival")
            )
            raise AppError(ErrorCatalog.CONFLICT, details={"transfer_id": body["id"], "transient": True})
        return real_approve(self, transfer_id, version, lines, **kwargs)

    monkeypatch.setattr(TransferWorkflow, "approve_transfer", approve_losing_race)

    response = client.post(
        f"/stocklink/transfers/{body['id']}/approve",
        json={"version": body["version"], "items": _item_lines(body, 20)},
        headers=headers_for(destination),
    )

    assert calls == [body["version"], body["version"]]
    assert response.status_code == 409
    details = response.json()["details"]
    assert details["transient"] is False
    assert details["current_version"] == body["version"] + 1
    assert stock_of(db_session, source, "P-1") == 30


def test_missing_actor_is_rejected(client, db_session):
    source, destination = seed_locations(db_session)

    response = _create(client, source, destination, headers={"X-Location-Id": str(destination.id)})

    assert response.status_code == 401
    assert response.json()["code"] == ErrorCatalog.ACTOR_CONTEXT_REQUIRED.code


def test_outsider_cannot_read_transfer(client, db_session):
    source, destination, outsider = seed_locations(db_session, "A", "B", "C")
    body = _create(client, source, destination).json()

    response = client.get(f"/stocklink/transfers/{body['id']}", headers=headers_for(outsider))

    assert response.status_code == 403
    assert response.json()["code"] == ErrorCatalog.FORBIDDEN_PARTICIPANT.code


def test_unknown_transfer_is_not_found(client, db_session):
    [location] = seed_locations(db_session, "Solo")

    response = client.get(f"/stocklink/transfers/{uuid.uuid4()}", headers=headers_for(location))

    assert response.status_code == 404
    assert response.json()["code"] == ErrorCatalog.NOT_FOUND.code


def test_invalid_quantity_is_invalid_input(client, db_session):
    source, destination = seed_locations(db_session)

    response = _create(client, source, destination, items=[{"product_id": "P-1", "quantity_requested": 0}])

    assert response.status_code == 422
    assert response.json()["code"] == ErrorCatalog.INVALID_INPUT.code


def test_malformed_body_is_validation_error(client, db_session):
    source, destination = seed_locations(db_session)

    response = client.post(
        "/stocklink/transfers",
        json={"from_location_id": "nope", "to_location_id": str(destination.id), "items": []},
        headers=headers_for(destination),
    )

    assert response.status_code == 422
    payload = response.json()
    assert payload["code"] == ErrorCatalog.VALIDATION_ERROR.code
    assert any(error["field"] == "from_location_id" for error in payload["details"]["errors"])


def test_idempotent_request_replays_response(client, db_session):
    source, destination = seed_locations(db_session)
    headers = {**headers_for(destination), "Idempotency-Key": "req-1"}

    first = _create(client, source, destination, headers=headers)
    second = _create(client, source, destination, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.json()["id"] == first.json()["id"]
    assert second.headers["X-Idempotency-Result"] == ErrorCatalog.IDEMPOTENCY_REPLAY.code

    listed = client.get("/stocklink/transfers", headers=headers_for(destination))
    assert listed.json()["total"] == 1


def test_idempotency_key_reused_with_different_payload(client, db_session):
    source, destination = seed_locations(db_session)
    headers = {**headers_for(destination), "Idempotency-Key": "req-2"}

    _create(client, source, destination, headers=headers)
    response = _create(
        client,
        source,
        destination,
        headers=headers,
        items=[{"product_id": "P-1", "quantity_requested": 21}],
    )

    assert response.status_code == 409
    assert response.json()["code"] == ErrorCatalog.IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD.code


def test_failed_idempotent_request_can_be_retried(client, db_session):
    source, destination = seed_locations(db_session)
    headers = {**headers_for(destination), "Idempotency-Key": "req-3"}
    destination.is_active = False
    db_session.commit()

    failed = _create(client, source, destination, headers=headers)
    assert failed.status_code == 422

    destination.is_active = True
    db_session.commit()
    retried = _create(client, source, destination, headers=headers)
    assert retried.status_code == 201


def test_listing_endpoints(client, db_session):
    source, destination = seed_locations(db_session)
    _create(client, source, destination, priority="urgent")
    _create(client, source, destination, items=[{"product_id": "P-2", "quantity_requested": 1}])

    listed = client.get(
        "/stocklink/transfers",
        params={"role": "destination", "status": ["pending"]},
        headers=headers_for(destination),
    )
    assert listed.status_code == 200
    assert listed.json()["total"] == 2
    assert listed.json()["rows"][0]["priority"] == "urgent"

    pending = client.get("/stocklink/transfers/pending-approvals", headers=headers_for(destination))
    assert len(pending.json()) == 2

    incoming = client.get("/stocklink/transfers/incoming", headers=headers_for(destination))
    assert incoming.json() == []

    foreign = client.get(
        "/stocklink/transfers",
        params={"location_id": str(source.id)},
        headers=headers_for(destination),
    )
    assert foreign.status_code == 403


def test_follow_up_over_http(client, db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 50)
    body = _create(client, source, destination).json()
    transfer_id = body["id"]
    client.post(
        f"/stocklink/transfers/{transfer_id}/approve",
        json={"version": 1, "items": _item_lines(body, 20)},
        headers=headers_for(destination),
    )
    client.post(f"/stocklink/transfers/{transfer_id}/ship", json={"version": 2}, headers=headers_for(source))
    closed = client.post(
        f"/stocklink/transfers/{transfer_id}/receive",
        json={"version": 3, "items": _item_lines(body, 15), "final": True},
        headers=headers_for(destination),
    )
    assert closed.json()["status"] == "partially_received"

    follow_up = client.post(f"/stocklink/transfers/{transfer_id}/follow-up", json={}, headers=headers_for(destination))

    assert follow_up.status_code == 201
    assert follow_up.json()["origin_transfer_id"] == transfer_id
    assert follow_up.json()["items"][0]["quantity_requested"] == 5


def test_cancel_over_http_restores_stock(client, db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 100)
    body = _create(client, source, destination, items=[{"product_id": "P-1", "quantity_requested": 10}]).json()
    client.post(
        f"/stocklink/transfers/{body['id']}/approve",
        json={"version": 1, "items": _item_lines(body, 10)},
        headers=headers_for(destination),
    )
    assert stock_of(db_session, source, "P-1") == 90

    cancelled = client.post(
        f"/stocklink/transfers/{body['id']}/cancel",
        json={"version": 2, "reason": "Changed plan"},
        headers=headers_for(source),
    )

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert stock_of(db_session, source, "P-1") == 100


def test_stock_lookup(client, db_session):
    source, destination = seed_locations(db_session)
    seed_stock(db_session, source, "P-1", 7)
    seed_stock(db_session, destination, "P-1", 3)

    response = client.get(
        "/stocklink/stock",
        params={"product_id": "P-1", "location_id": str(source.id)},
        headers=headers_for(source),
    )

    assert response.status_code == 200
    assert [(row["location_id"], row["quantity"]) for row in response.json()["rows"]] == [(str(source.id), 7)]
