from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.stocklink.core.config import settings
from app.stocklink.core.context import ActorContext
from app.stocklink.core.deps import require_actor
from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.core.logging import log_json
from app.stocklink.db.models import Transfer
from app.stocklink.db.session import get_db
from app.stocklink.repos.audit import AuditRepository
from app.stocklink.repos.locations import LocationRepository
from app.stocklink.schemas.errors import ERROR_RESPONSES
from app.stocklink.schemas.transfers import (
    ItemQuantity,
    TransferApproveRequest,
    TransferCancelRequest,
    TransferCreateRequest,
    TransferEventListResponse,
    TransferEventResponse,
    TransferFollowUpRequest,
    TransferItemResponse,
    TransferListResponse,
    TransferReceiveRequest,
    TransferRejectRequest,
    TransferResponse,
    TransferShipRequest,
    TransferSummaryResponse,
)
from app.stocklink.services.idempotency import IdempotencyService, extract_idempotency_key
from app.stocklink.services.transfer_queries import TransferQueryService, TransferSummary
from app.stocklink.services.transfer_states import allowed_actions
from app.stocklink.services.transfer_workflow import QuantityLine, RequestedItem, TransferWorkflow


router = APIRouter()
logger = logging.getLogger("stocklink.transfers")


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


def _transfer_response(db, transfer: Transfer) -> TransferResponse:
    names = LocationRepository(db).names_by_id([transfer.from_location_id, transfer.to_location_id])
    return TransferResponse(
        id=str(transfer.id),
        transfer_number=transfer.transfer_number,
        from_location_id=str(transfer.from_location_id),
        from_location_name=names.get(str(transfer.from_location_id)),
        to_location_id=str(transfer.to_location_id),
        to_location_name=names.get(str(transfer.to_location_id)),
        status=transfer.status,
        priority=transfer.priority,
        transfer_type=transfer.transfer_type,
        origin_sale_id=transfer.origin_sale_id,
        origin_transfer_id=_str_or_none(transfer.origin_transfer_id),
        requested_by=transfer.requested_by,
        approved_by=transfer.approved_by,
        rejected_by=transfer.rejected_by,
        shipped_by=transfer.shipped_by,
        received_by=transfer.received_by,
        cancelled_by=transfer.cancelled_by,
        requested_at=transfer.requested_at,
        expires_at=transfer.expires_at,
        approved_at=transfer.approved_at,
        rejected_at=transfer.rejected_at,
        shipped_at=transfer.shipped_at,
        received_at=transfer.received_at,
        cancelled_at=transfer.cancelled_at,
        expired_at=transfer.expired_at,
        request_notes=transfer.request_notes,
        approval_notes=transfer.approval_notes,
        rejection_reason=transfer.rejection_reason,
        shipping_notes=transfer.shipping_notes,
        receiving_notes=transfer.receiving_notes,
        cancellation_reason=transfer.cancellation_reason,
        reconciliation_required=transfer.reconciliation_required,
        allowed_actions=allowed_actions(transfer.status),
        version=transfer.version,
        items=[
            TransferItemResponse(
                id=str(item.id),
                line_number=item.line_number,
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity_requested=item.quantity_requested,
                quantity_approved=item.quantity_approved,
                quantity_shipped=item.quantity_shipped,
                quantity_received=item.quantity_received,
                quantity_outstanding=max((item.quantity_shipped or 0) - item.quantity_received, 0),
                notes=item.notes,
            )
            for item in transfer.items
        ],
    )


def _note_transfer(request: Request, transfer: Transfer, expected_version: int | None = None) -> Transfer:
    request.state.transfer_id = str(transfer.id)
    request.state.transfer_status = transfer.status
    request.state.transfer_version = transfer.version
    if expected_version is not None:
        request.state.expected_version = expected_version
    return transfer


def _summary_response(summary: TransferSummary) -> TransferSummaryResponse:
    return TransferSummaryResponse(**summary.__dict__)


def _quantity_lines(items: list[ItemQuantity]) -> list[QuantityLine]:
    return [QuantityLine(item_id=item.item_id, quantity=item.quantity) for item in items]


def _scoped_location(actor: ActorContext, location_id: UUID | None) -> str | None:
    if location_id is None:
        return actor.location_id
    requested = str(location_id)
    if not actor.is_admin and requested != actor.location_id:
        raise AppError(
            ErrorCatalog.FORBIDDEN_PARTICIPANT,
            details={"location_id": requested, "actor_location_id": actor.location_id},
        )
    return requested


def _required_location(actor: ActorContext, location_id: UUID | None) -> str:
    target = _scoped_location(actor, location_id)
    if not target:
        raise AppError(ErrorCatalog.INVALID_INPUT, details={"message": "location_id is required"})
    return target


def _require_visible(actor: ActorContext, transfer: Transfer) -> None:
    if actor.is_admin or actor.location_id in {str(transfer.from_location_id), str(transfer.to_location_id)}:
        return
    raise AppError(
        ErrorCatalog.FORBIDDEN_PARTICIPANT,
        details={"transfer_id": str(transfer.id), "actor_location_id": actor.location_id},
    )


def _with_transient_retry(action: str, operation):
    """Run ``operation`` and run it once more when it lost a commit race.

    The second run re-reads the transfer under the caller's version, which has
    moved by then, so a lost race ends as a regular ``CONFLICT`` carrying
    ``current_version`` instead of a flush-time error without it.
    """
    try:
        return operation()
    except AppError as exc:
        details = exc.details if isinstance(exc.details, dict) else {}
        if exc.code != ErrorCatalog.CONFLICT.code or not details.get("transient"):
            raise
        log_json(logger, {"event": "transfer_transient_retry", "action": action, "details": details})
    return operation()


@router.get("/stocklink/transfers", response_model=TransferListResponse)
def list_transfers(
    location_id: UUID | None = None,
    role: Literal["any", "source", "destination"] = "any",
    status: list[str] | None = Query(default=None),
    priority: Literal["normal", "urgent"] | None = None,
    transfer_type: Literal["manual", "pos_request"] | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1),
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    summaries, total = TransferQueryService(db).list_transfers(
        location_id=_scoped_location(actor, location_id),
        role=role,
        statuses=status,
        priority=priority,
        transfer_type=transfer_type,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )
    return TransferListResponse(
        page=page,
        page_size=min(page_size, settings.TRANSFER_LIST_MAX_PAGE_SIZE),
        total=total,
        rows=[_summary_response(summary) for summary in summaries],
    )


@router.get("/stocklink/transfers/pending-approvals", response_model=list[TransferSummaryResponse])
def pending_approvals(
    location_id: UUID | None = None,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    target = _required_location(actor, location_id)
    return [_summary_response(summary) for summary in TransferQueryService(db).pending_approvals(target)]


@router.get("/stocklink/transfers/incoming", response_model=list[TransferSummaryResponse])
def incoming_transfers(
    location_id: UUID | None = None,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    target = _required_location(actor, location_id)
    return [_summary_response(summary) for summary in TransferQueryService(db).incoming(target)]


@router.post(
    "/stocklink/transfers",
    response_model=TransferResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
)
def create_transfer(
    request: Request,
    payload: TransferCreateRequest,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    idempotency_key = extract_idempotency_key(request.headers)
    context = None
    if idempotency_key:
        context, replay = IdempotencyService(db).start(
            scope=actor.actor_id,
            endpoint=str(request.url.path),
            method=request.method,
            idempotency_key=idempotency_key,
            request_hash=IdempotencyService.fingerprint(payload.model_dump(mode="json")),
        )
        if replay:
            return JSONResponse(
                status_code=replay.status_code,
                content=replay.response_body,
                headers={"X-Idempotency-Result": ErrorCatalog.IDEMPOTENCY_REPLAY.code},
            )
        request.state.idempotency = context

    transfer = TransferWorkflow(db).request_transfer(
        from_location_id=payload.from_location_id,
        to_location_id=payload.to_location_id,
        items=[
            RequestedItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity_requested=item.quantity_requested,
                notes=item.notes,
            )
            for item in payload.items
        ],
        actor=actor,
        priority=payload.priority,
        transfer_type=payload.transfer_type,
        origin_sale_id=payload.origin_sale_id,
        notes=payload.notes,
        expires_at=payload.expires_at,
    )
    response = _transfer_response(db, _note_transfer(request, transfer))
    if context is not None:
        context.record_success(status_code=201, response_body=response.model_dump(mode="json"))
    return response


@router.get("/stocklink/transfers/{transfer_id}", response_model=TransferResponse, responses=ERROR_RESPONSES)
def get_transfer(
    request: Request,
    transfer_id: UUID,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    transfer = TransferWorkflow(db).get_transfer(transfer_id)
    _require_visible(actor, transfer)
    return _transfer_response(db, _note_transfer(request, transfer))


@router.post("/stocklink/transfers/{transfer_id}/approve", response_model=TransferResponse, responses=ERROR_RESPONSES)
def approve_transfer(
    request: Request,
    transfer_id: UUID,
    payload: TransferApproveRequest,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    workflow = TransferWorkflow(db)
    transfer = _with_transient_retry(
        "approve",
        lambda: workflow.approve_transfer(
            transfer_id,
            payload.version,
            _quantity_lines(payload.items),
            actor=actor,
            notes=payload.notes,
        ),
    )
    return _transfer_response(db, _note_transfer(request, transfer, payload.version))


@router.post("/stocklink/transfers/{transfer_id}/reject", response_model=TransferResponse, responses=ERROR_RESPONSES)
def reject_transfer(
    request: Request,
    transfer_id: UUID,
    payload: TransferRejectRequest,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    workflow = TransferWorkflow(db)
    transfer = _with_transient_retry(
        "reject",
        lambda: workflow.reject_transfer(transfer_id, payload.version, payload.reason, actor=actor),
    )
    return _transfer_response(db, _note_transfer(request, transfer, payload.version))


@router.post("/stocklink/transfers/{transfer_id}/ship", response_model=TransferResponse, responses=ERROR_RESPONSES)
def ship_transfer(
    request: Request,
    transfer_id: UUID,
    payload: TransferShipRequest,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    workflow = TransferWorkflow(db)
    transfer = _with_transient_retry(
        "ship",
        lambda: workflow.mark_in_transit(transfer_id, payload.version, actor=actor, notes=payload.notes),
    )
    return _transfer_response(db, _note_transfer(request, transfer, payload.version))


@router.post("/stocklink/transfers/{transfer_id}/receive", response_model=TransferResponse, responses=ERROR_RESPONSES)
def receive_transfer(
    request: Request,
    transfer_id: UUID,
    payload: TransferReceiveRequest,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    workflow = TransferWorkflow(db)
    transfer = _with_transient_retry(
        "receive",
        lambda: workflow.receive_transfer(
            transfer_id,
            payload.version,
            _quantity_lines(payload.items),
            actor=actor,
            final=payload.final,
            notes=payload.notes,
        ),
    )
    return _transfer_response(db, _note_transfer(request, transfer, payload.version))


@router.post("/stocklink/transfers/{transfer_id}/cancel", response_model=TransferResponse, responses=ERROR_RESPONSES)
def cancel_transfer(
    request: Request,
    transfer_id: UUID,
    payload: TransferCancelRequest,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    workflow = TransferWorkflow(db)
    transfer = _with_transient_retry(
        "cancel",
        lambda: workflow.cancel_transfer(transfer_id, payload.version, payload.reason, actor=actor),
    )
    return _transfer_response(db, _note_transfer(request, transfer, payload.version))


@router.post(
    "/stocklink/transfers/{transfer_id}/follow-up",
    response_model=TransferResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
)
def follow_up_transfer(
    request: Request,
    transfer_id: UUID,
    payload: TransferFollowUpRequest | None = None,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    transfer = TransferWorkflow(db).request_follow_up(
        transfer_id,
        actor=actor,
        notes=payload.notes if payload else None,
    )
    return _transfer_response(db, _note_transfer(request, transfer))


@router.get(
    "/stocklink/transfers/{transfer_id}/events",
    response_model=TransferEventListResponse,
    responses=ERROR_RESPONSES,
)
def transfer_events(
    transfer_id: UUID,
    actor: ActorContext = Depends(require_actor),
    db=Depends(get_db),
):
    _require_visible(actor, TransferWorkflow(db).get_transfer(transfer_id))
    events = AuditRepository(db).list_for_entity("transfer", str(transfer_id))
    return TransferEventListResponse(
        transfer_id=str(transfer_id),
        rows=[
            TransferEventResponse(
                id=str(event.id),
                action=event.action,
                result=event.result,
                actor=event.actor,
                actor_location_id=event.actor_location_id,
                trace_id=event.trace_id,
                before=event.before_payload,
                after=event.after_payload,
                metadata=event.event_metadata,
                created_at=event.created_at,
            )
            for event in events
        ],
    )
