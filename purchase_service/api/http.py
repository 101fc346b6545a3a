from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Query, Request

from ..common.errors import ApiError, PublishError
from ..common.time_util import utc_now, utc_now_iso
from ..common.trace import new_trace_id
from ..events.identity import PurchaseEventData
from ..events.publisher import EventPublisher
from ..events.routing import PURCHASE_CREATED, PURCHASE_UPDATED
from ..models import (
    PAYMENT_METHODS,
    PURCHASE_STATUSES,
    BuyerDetails,
    CapabilitiesResponse,
    CapabilityItem,
    OkEnvelope,
    PublishOutcome,
    PurchaseListResult,
    PurchaseRecord,
    PurchaseWrite,
)
from ..storage.db import PurchaseRow, SqliteStore

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_FUTURE_SKEW = timedelta(minutes=5)
MAX_PAST = timedelta(days=5 * 365)


def ok(trace_id: str, data: Any) -> dict:
    # mode="json": Decimal amounts render as exact strings, datetimes as ISO-8601 Z
    return OkEnvelope(trace_id=trace_id, data=data).model_dump(mode="json")


def _is_valid_status(status: str) -> bool:
    return status.lower() in {s.lower() for s in PURCHASE_STATUSES}


def _is_valid_payment_method(method: str) -> bool:
    return method.lower() in {m.lower() for m in PAYMENT_METHODS}


def _require_positive(value: Optional[int], label: str) -> None:
    if value is not None and value <= 0:
        raise ApiError(code="BAD_REQUEST", message=f"{label} must be greater than 0")


def _validate_write(body: PurchaseWrite, now: Optional[datetime] = None) -> None:
    now = now or utc_now()
    purchase_date = body.purchase_date
    if purchase_date.tzinfo is None:
        # naive timestamps are treated as UTC
        purchase_date = purchase_date.replace(tzinfo=now.tzinfo)
    if purchase_date > now + MAX_FUTURE_SKEW:
        raise ApiError(code="BAD_REQUEST", message="Purchase date cannot be more than 5 minutes in the future")
    if purchase_date < now - MAX_PAST:
        raise ApiError(code="BAD_REQUEST", message="Purchase date cannot be more than 5 years in the past")
    if not _is_valid_status(body.status):
        raise ApiError(
            code="BAD_REQUEST",
            message="Invalid status. Valid values are: " + ", ".join(PURCHASE_STATUSES),
        )
    method = body.buyer_details.payment_method
    if method and not _is_valid_payment_method(method):
        raise ApiError(
            code="BAD_REQUEST",
            message="Invalid payment method. Valid values are: " + ", ".join(PAYMENT_METHODS),
        )


def _to_record(row: PurchaseRow) -> PurchaseRecord:
    return PurchaseRecord(
        purchase_id=row.purchase_id,
        buyer_id=row.buyer_id,
        offer_id=row.offer_id,
        purchase_date=row.purchase_date,
        amount=row.amount,
        status=row.status,
        buyer_details=BuyerDetails.model_validate(row.buyer_details),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _event_data(row: PurchaseRow) -> PurchaseEventData:
    return PurchaseEventData(
        purchase_id=str(row.purchase_id),
        buyer_id=str(row.buyer_id),
        offer_id=str(row.offer_id),
        amount=row.amount,
        status=row.status,
        purchase_date=row.purchase_date,
    )


async def _publish_after_commit(request: Request, row: PurchaseRow, event_type: str) -> PublishOutcome:
    """Called exactly once after a committed create/update.

    The publisher always raises on failure; whether that fails the request
    is this caller's decision (events.fail_request_on_publish_error).
    """
    publisher: Optional[EventPublisher] = request.app.state.publisher
    if publisher is None:
        return PublishOutcome(published=False, event_type=event_type, error="events disabled")

    try:
        result = await publisher.publish(_event_data(row), event_type)
    except PublishError as e:
        if request.app.state.config.events.fail_request_on_publish_error:
            raise ApiError(
                code="EVENT_PUBLISH_FAILED",
                message=f"Purchase {row.purchase_id} was saved but the {event_type} event could not be published",
                http_status=503,
                data={"purchase_id": row.purchase_id, "event_type": event_type},
            ) from e
        logger.warning("Purchase %s saved without %s event: %s", row.purchase_id, event_type, e)
        return PublishOutcome(published=False, event_type=event_type, error=str(e))

    return PublishOutcome(
        published=True,
        event_type=result.event_type,
        routing_key=result.routing_key,
        message_id=result.message_id,
        confirmed=result.confirmed,
    )


@router.get("/health")
def health_check():
    trace_id = new_trace_id()
    return ok(trace_id, {"service": "purchase_service", "time_utc": utc_now_iso()})


@router.get("/capabilities")
def capabilities(request: Request):
    trace_id = new_trace_id()
    registry = request.app.state.registry
    items = [
        CapabilityItem(
            name=s.name,
            status=s.status,
            last_changed_at_utc=s.last_changed_at_utc,
            enabled=s.enabled,
            mode=s.mode,
            detail=s.detail,
        )
        for s in registry.snapshot()
    ]
    return ok(trace_id, CapabilitiesResponse(items=items))


@router.get("/purchases")
def list_purchases(
    request: Request,
    buyer_id: Optional[int] = Query(default=None),
    offer_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    page_size: int = Query(default=10),
):
    if page < 1:
        raise ApiError(code="BAD_REQUEST", message="Page number must be greater than 0")
    if page_size < 1 or page_size > 100:
        raise ApiError(code="BAD_REQUEST", message="Page size must be between 1 and 100")
    _require_positive(buyer_id, "BuyerId")
    _require_positive(offer_id, "OfferId")
    if status and not _is_valid_status(status):
        raise ApiError(
            code="BAD_REQUEST",
            message="Invalid status. Valid values are: " + ", ".join(PURCHASE_STATUSES),
        )

    trace_id = new_trace_id()
    store: SqliteStore = request.app.state.store
    rows = store.list_purchases(
        buyer_id=buyer_id,
        offer_id=offer_id,
        status=status,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    items = [_to_record(r) for r in rows]
    return ok(trace_id, PurchaseListResult(items=items, page=page, page_size=page_size))


@router.get("/purchases/buyer/{buyer_id}")
def list_purchases_by_buyer(request: Request, buyer_id: int):
    _require_positive(buyer_id, "Buyer ID")
    store: SqliteStore = request.app.state.store
    items = [_to_record(r) for r in store.list_purchases(buyer_id=buyer_id)]
    return ok(new_trace_id(), {"items": items})


@router.get("/purchases/offer/{offer_id}")
def list_purchases_by_offer(request: Request, offer_id: int):
    _require_positive(offer_id, "Offer ID")
    store: SqliteStore = request.app.state.store
    items = [_to_record(r) for r in store.list_purchases(offer_id=offer_id)]
    return ok(new_trace_id(), {"items": items})


@router.get("/purchases/{purchase_id}")
def get_purchase(request: Request, purchase_id: int):
    _require_positive(purchase_id, "Purchase ID")
    store: SqliteStore = request.app.state.store
    row = store.get_purchase(purchase_id)
    if row is None:
        raise ApiError(code="NOT_FOUND", message=f"Purchase with ID {purchase_id} not found", http_status=404)
    return ok(new_trace_id(), {"purchase": _to_record(row)})


@router.post("/purchases", status_code=201)
async def create_purchase(request: Request, body: PurchaseWrite):
    _validate_write(body)
    trace_id = new_trace_id()
    store: SqliteStore = request.app.state.store

    row = store.create_purchase(
        buyer_id=body.buyer_id,
        offer_id=body.offer_id,
        purchase_date=body.purchase_date,
        amount=body.amount,
        status=body.status,
        buyer_details=body.buyer_details.model_dump(mode="json"),
    )
    event = await _publish_after_commit(request, row, PURCHASE_CREATED)
    logger.info("Purchase created with ID %s (event published: %s)", row.purchase_id, event.published)
    return ok(trace_id, {"purchase": _to_record(row), "event": event})


@router.put("/purchases/{purchase_id}")
async def update_purchase(request: Request, purchase_id: int, body: PurchaseWrite):
    _require_positive(purchase_id, "Purchase ID")
    _validate_write(body)
    trace_id = new_trace_id()
    store: SqliteStore = request.app.state.store

    row = store.update_purchase(
        purchase_id,
        buyer_id=body.buyer_id,
        offer_id=body.offer_id,
        purchase_date=body.purchase_date,
        amount=body.amount,
        status=body.status,
        buyer_details=body.buyer_details.model_dump(mode="json"),
    )
    if row is None:
        raise ApiError(code="NOT_FOUND", message=f"Purchase with ID {purchase_id} not found", http_status=404)
    event = await _publish_after_commit(request, row, PURCHASE_UPDATED)
    logger.info("Purchase updated with ID %s (event published: %s)", row.purchase_id, event.published)
    return ok(trace_id, {"purchase": _to_record(row), "event": event})


@router.delete("/purchases/{purchase_id}")
def delete_purchase(request: Request, purchase_id: int):
    _require_positive(purchase_id, "Purchase ID")
    store: SqliteStore = request.app.state.store
    if not store.delete_purchase(purchase_id):
        raise ApiError(code="NOT_FOUND", message=f"Purchase with ID {purchase_id} not found", http_status=404)
    # deletes are not announced to the broker
    return ok(new_trace_id(), {"deleted": purchase_id})
