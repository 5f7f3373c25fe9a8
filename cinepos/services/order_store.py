"""Persisted orders: creation, conditional transitions, queries.

Orders are never deleted. Every status change goes through ``transition``,
which is a compare-and-set on ``(status, version)`` and appends an audit row.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cinepos.config import settings
from cinepos.errors import Conflict, NotFound
from cinepos.models.common import utcnow
from cinepos.models.core import (
    AuditLog, Channel, Order, OrderCounter, OrderStatus, PaymentStatus, PayMethod, Theater,
)
from cinepos.services.pricing import rupees
from cinepos.util.audit import audit

log = logging.getLogger(__name__)

TERMINAL = {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED}

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PAID, OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED, OrderStatus.FAILED,
    },
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
}

REVENUE_STATUSES = (OrderStatus.PAID, OrderStatus.COMPLETED)


class DuplicateOrder(Exception):
    """Raised by ``create`` when (theater, idempotency key) already exists."""

    def __init__(self, order: Order):
        super().__init__(order.id)
        self.order = order


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def business_date(at: datetime | None = None) -> date:
    return as_utc(at or utcnow()).astimezone(ZoneInfo(settings.TZ)).date()


def _prefix(theater: Theater) -> str:
    name = (theater.name or "").strip()
    if len(name) >= 2:
        return name[:2].upper()
    if len(name) == 1:
        return (name * 2).upper()
    return theater.id[:2].upper()


def allocate_order_number(db: Session, theater: Theater, day: date) -> str:
    """Next human-readable number for (theater, day): ``AB-20250101-0001``."""
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    db.execute(
        insert(OrderCounter)
        .values(theater_id=theater.id, business_date=day, last_no=0)
        .on_conflict_do_nothing(index_elements=["theater_id", "business_date"])
    )
    db.execute(
        update(OrderCounter)
        .where(OrderCounter.theater_id == theater.id, OrderCounter.business_date == day)
        .values(last_no=OrderCounter.last_no + 1)
    )
    n = db.scalar(select(OrderCounter.last_no).where(
        OrderCounter.theater_id == theater.id, OrderCounter.business_date == day,
    ))
    return f"{_prefix(theater)}-{day.strftime('%Y%m%d')}-{n:04d}"


# --- writes -----------------------------------------------------------------

def find_by_idempotency_key(db: Session, theater_id: str, key: str) -> Order | None:
    return db.scalar(select(Order).where(Order.theater_id == theater_id, Order.idempotency_key == key))


def create(db: Session, order: Order) -> Order:
    """Insert ``order`` (status PENDING) inside the caller's transaction.

    On a duplicate idempotency key the transaction is rolled back and
    ``DuplicateOrder`` carries the previously persisted order.
    """
    db.add(order)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = find_by_idempotency_key(db, order.theater_id, order.idempotency_key)
        if existing is None:
            raise
        raise DuplicateOrder(existing)
    audit(db, order.created_by_user_id or "system", "Order", order.id, "CREATE",
          after=order.status.value, reason=order.source)
    return order


def transition(
    db: Session,
    order_id: str,
    expected: OrderStatus,
    nxt: OrderStatus,
    patch: dict | None = None,
    *,
    actor: str = "system",
    reason: str | None = None,
) -> Order:
    """Conditional status change; ``Conflict`` unless the order is currently ``expected``."""
    order = get(db, order_id)
    db.refresh(order)
    if order.status != expected:
        raise Conflict(f"order {order_id} is {order.status.value}, expected {expected.value}",
                       orderStatus=order.status.value)
    if nxt not in ALLOWED_TRANSITIONS[expected]:
        raise Conflict(f"transition {expected.value} -> {nxt.value} not allowed",
                       orderStatus=order.status.value)

    patch = dict(patch or {})
    pay_status = patch.get("payment_status", order.payment_status)
    if (order.channel == Channel.ONLINE
            and nxt in (OrderStatus.CONFIRMED, OrderStatus.PAID, OrderStatus.COMPLETED)
            and pay_status not in (PaymentStatus.PAID, PaymentStatus.REFUNDED)):
        raise Conflict("online orders must be paid before leaving PENDING",
                       orderStatus=order.status.value)

    values = dict(patch, status=nxt, version=Order.version + 1, updated_at=utcnow())
    if reason is not None:
        values.setdefault("status_reason", reason)
    res = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected, Order.version == order.version)
        .values(**values)
    )
    if res.rowcount != 1:
        raise Conflict(f"order {order_id} changed concurrently")
    audit(db, actor, "Order", order_id, "TRANSITION",
          before=expected.value, after=nxt.value, reason=reason)
    db.flush()
    db.refresh(order)
    log.info("order %s %s -> %s (%s)", order_id, expected.value, nxt.value, reason or "-")
    return order


# --- reads ------------------------------------------------------------------

def get(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound(f"order {order_id} not found")
    return order


def audit_trail(db: Session, order_id: str) -> list[dict]:
    rows = db.scalars(
        select(AuditLog)
        .where(AuditLog.entity == "Order", AuditLog.entity_id == order_id)
        .order_by(AuditLog.created_at.asc())
    ).all()
    return [
        {
            "actor": r.actor_user_id,
            "action": r.action,
            "from": r.before if r.action == "TRANSITION" else None,
            "to": r.after,
            "reason": r.reason,
            "timestamp": _iso(r.created_at),
        }
        for r in rows
    ]


@dataclass
class OrderFilter:
    theater_id: str | None = None
    sources: list[str] = field(default_factory=list)
    status: OrderStatus | None = None
    payment_method: PayMethod | None = None
    search: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    since_version: int | None = None


def _apply(q, f: OrderFilter):
    if f.theater_id:
        q = q.where(Order.theater_id == f.theater_id)
    if f.sources:
        q = q.where(Order.source.in_(f.sources))
    if f.status:
        q = q.where(Order.status == f.status)
    if f.payment_method:
        q = q.where(Order.payment_method == f.payment_method)
    if f.search:
        like = f"%{f.search.strip()}%"
        q = q.where(or_(Order.order_number.ilike(like), Order.customer_name.ilike(like)))
    if f.start_date:
        q = q.where(Order.business_date >= f.start_date)
    if f.end_date:
        q = q.where(Order.business_date <= f.end_date)
    if f.since_version is not None:
        q = q.where(Order.version > f.since_version)
    return q


def list_orders(db: Session, f: OrderFilter, page: int = 1, limit: int = 20) -> tuple[list[Order], int]:
    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    total = db.scalar(_apply(select(func.count(Order.id)), f)) or 0
    rows = db.scalars(
        _apply(select(Order), f)
        .order_by(Order.created_at.desc(), Order.order_number.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return list(rows), int(total)


def summarize(db: Session, f: OrderFilter) -> dict:
    q = _apply(
        select(
            func.count(Order.id),
            func.coalesce(func.sum(case((Order.status.in_((OrderStatus.CONFIRMED, OrderStatus.PAID)), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Order.status == OrderStatus.COMPLETED, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Order.status == OrderStatus.CANCELLED, Order.total), else_=0)), 0),
            func.coalesce(func.sum(case((Order.status.in_(REVENUE_STATUSES), Order.total), else_=0)), 0),
        ),
        f,
    )
    total, confirmed, completed, cancelled_amt, revenue = db.execute(q).one()
    return {
        "totalOrders": int(total),
        "confirmedOrders": int(confirmed),
        "completedOrders": int(completed),
        "cancelledOrderAmount": rupees(int(cancelled_amt)),
        "totalRevenue": rupees(int(revenue)),
    }


# --- wire shape -------------------------------------------------------------

def serialize_item(it) -> dict:
    return {
        "productId": it.product_id,
        "name": it.name,
        "category": it.category,
        "imageUrl": it.image_url,
        "quantity": it.quantity,
        "unitPrice": rupees(it.unit_price),
        "taxRate": float(it.tax_rate or 0),
        "gstType": getattr(it.gst_type, "value", it.gst_type),
        "discountPercentage": float(it.discount_percentage or 0),
        "size": it.size_label,
        "specialInstructions": it.special_instructions,
        "lineSubtotal": rupees(it.line_subtotal),
        "lineTax": rupees(it.line_tax),
        "lineDiscount": rupees(it.line_discount),
        "lineTotal": rupees(it.line_total),
    }


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "theaterId": order.theater_id,
        "businessDate": order.business_date.isoformat(),
        "source": order.source,
        "orderType": order.order_type.value,
        "channel": order.channel.value,
        "customerName": order.customer_name,
        "qrName": order.qr_name,
        "seat": order.seat,
        "idempotencyKey": order.idempotency_key,
        "status": order.status.value,
        "statusReason": order.status_reason,
        "payment": {
            "status": order.payment_status.value,
            "method": order.payment_method.value,
            "provider": order.payment_provider.value,
            "gatewayRef": order.gateway_ref,
            "paidAt": _iso(order.paid_at),
        },
        "items": [serialize_item(it) for it in order.items],
        "pricing": {
            "subtotal": rupees(order.subtotal),
            "grossNet": rupees(order.subtotal + order.total_discount),
            "cgst": rupees(order.cgst),
            "sgst": rupees(order.sgst),
            "tax": rupees(order.tax),
            "totalDiscount": rupees(order.total_discount),
            "total": rupees(order.total),
            "currency": settings.CURRENCY,
        },
        "version": order.version,
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
    }


def window(start: date | None, end: date | None, days: int = 7) -> tuple[date, date]:
    end = end or business_date()
    start = start or (end - timedelta(days=days - 1))
    return start, end
