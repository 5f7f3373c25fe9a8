from datetime import date
from math import ceil

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from cinepos.db import get_db
from cinepos.deps import current_user, require_theater_access
from cinepos.errors import ValidationFailed
from cinepos.models.core import OrderStatus, PaymentTransaction, User
from cinepos.schemas.orders import CancelIn, OrderCreate
from cinepos.services import lifecycle
from cinepos.services import order_store as store
from cinepos.services.gateway_config import normalize_method

router = APIRouter(prefix="/orders", tags=["orders"])


def _status(value: str | None) -> OrderStatus | None:
    if not value:
        return None
    try:
        return OrderStatus(value.upper())
    except ValueError:
        raise ValidationFailed(f"invalid status {value!r}")


@router.post("", status_code=201)
def accept_order(body: OrderCreate, db: Session = Depends(get_db), user: User = Depends(current_user)):
    """
    Accept an order from any channel (POS, kiosk, QR/web).

    Cash orders come back PAID. Gateway methods come back PENDING_PAYMENT with
    ``gatewayParams`` for the provider SDK. Retrying with the same
    ``idempotencyKey`` returns the original order.
    """
    require_theater_access(user, body.theater_id)
    res = lifecycle.accept_order(db, body, actor=user.id)
    headers = {"Idempotent-Replayed": "true"} if res.replayed else None
    return JSONResponse(status_code=201, content=res.body, headers=headers)


@router.get("")
def list_orders(
    theater_id: str = Query(alias="theaterId"),
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
    status: str | None = None,
    payment_mode: str | None = Query(default=None, alias="paymentMode"),
    source: str | None = None,
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    """
    Paged order list with the summary block the order-history screen shows.

    ``source`` is comma separated (``pos,offline-pos``); dates are inclusive
    business dates.
    """
    require_theater_access(user, theater_id)
    f = store.OrderFilter(
        theater_id=theater_id,
        sources=[s.strip() for s in (source or "").split(",") if s.strip()],
        status=_status(status),
        payment_method=normalize_method(payment_mode) if payment_mode else None,
        search=search,
        start_date=start_date,
        end_date=end_date,
    )
    limit = min(max(limit, 1), 200)
    rows, total = store.list_orders(db, f, page, limit)
    return {
        "items": [store.serialize_order(o) for o in rows],
        "pagination": {
            "current": max(page, 1),
            "totalPages": ceil(total / limit) if total else 0,
            "totalItems": total,
        },
        "summary": store.summarize(db, f),
    }


@router.get("/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    order = store.get(db, order_id)
    require_theater_access(user, order.theater_id)
    txns = db.scalars(
        select(PaymentTransaction)
        .where(PaymentTransaction.order_id == order.id)
        .order_by(PaymentTransaction.created_at)
    ).all()
    return {
        **store.serialize_order(order),
        "transactions": [
            {**lifecycle.serialize_txn(t), "status": t.status.value, "providerTxnId": t.provider_txn_id,
             "refundRef": t.refund_ref, "failureReason": t.failure_reason}
            for t in txns
        ],
        "audit": store.audit_trail(db, order.id),
    }


def _guarded(db: Session, order_id: str, user: User):
    require_theater_access(user, store.get(db, order_id).theater_id)


@router.post("/{order_id}/confirm")
def confirm_order(order_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    _guarded(db, order_id, user)
    return store.serialize_order(lifecycle.confirm(db, order_id, user.id))


@router.post("/{order_id}/settle")
def settle_order(order_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    _guarded(db, order_id, user)
    return store.serialize_order(lifecycle.settle(db, order_id, user.id))


@router.post("/{order_id}/complete")
def complete_order(order_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    _guarded(db, order_id, user)
    return store.serialize_order(lifecycle.complete(db, order_id, user.id))


@router.post("/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelIn | None = None,
                 db: Session = Depends(get_db), user: User = Depends(current_user)):
    _guarded(db, order_id, user)
    order = lifecycle.cancel(db, order_id, user.id, body.reason if body else None)
    return store.serialize_order(order)
