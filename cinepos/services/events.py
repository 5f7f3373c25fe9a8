"""Order event outbox.

``publish`` writes an ``OrderEvent`` row inside the same transaction as the
order change, so an event exists iff the change committed. ``dispatch_pending``
delivers committed events to durable subscribers after the fact, tracking a
per-subscriber checkpoint (at-least-once; subscribers are idempotent on
order id + version). Low-stock notices share the stream under their own kind.
The dashboard cache and the notification stream read the
outbox directly by sequence number.
"""
import logging
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from cinepos.models.core import Order, OrderEvent, Product, ProductStock, SubscriberCheckpoint
from cinepos.services.order_store import _iso, serialize_order

log = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_KINDS = (ORDER_CREATED, ORDER_UPDATED)
STOCK_LOW = "stock.low"

Handler = Callable[[Session, OrderEvent], None]
SUBSCRIBERS: dict[str, Handler] = {}


def subscriber(name: str):
    def decorator(fn: Handler) -> Handler:
        SUBSCRIBERS[name] = fn
        return fn
    return decorator


def publish(db: Session, order: Order, kind: str = ORDER_UPDATED, reason: str | None = None) -> OrderEvent:
    payload = serialize_order(order)
    if reason:
        payload["reason"] = reason
    ev = OrderEvent(
        theater_id=order.theater_id,
        order_id=order.id,
        order_version=order.version,
        kind=kind,
        payload=payload,
    )
    db.add(ev)
    db.flush()
    return ev


def publish_stock_alert(db: Session, stock: ProductStock, product: Product, threshold: int) -> OrderEvent:
    """Low-stock notice on the theater's stream; ``order_id`` carries the product id."""
    ev = OrderEvent(
        theater_id=stock.theater_id,
        order_id=product.id,
        order_version=stock.version,
        kind=STOCK_LOW,
        payload={"productId": product.id, "name": product.name, "available": stock.available,
                 "threshold": threshold},
    )
    db.add(ev)
    db.flush()
    return ev


def _checkpoint(db: Session, name: str) -> int:
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    db.execute(
        insert(SubscriberCheckpoint)
        .values(subscriber=name, last_seq=0, version=1)
        .on_conflict_do_nothing(index_elements=["subscriber"])
    )
    return int(db.scalar(select(SubscriberCheckpoint.last_seq).where(SubscriberCheckpoint.subscriber == name)) or 0)


def dispatch_pending(db: Session, batch: int = 200) -> int:
    """Deliver committed events to every registered subscriber. Returns deliveries made."""
    delivered = 0
    for name, handler in list(SUBSCRIBERS.items()):
        last = _checkpoint(db, name)
        db.commit()
        events = db.scalars(
            select(OrderEvent).where(OrderEvent.seq > last).order_by(OrderEvent.seq).limit(batch)
        ).all()
        for ev in events:
            try:
                handler(db, ev)
                db.execute(
                    update(SubscriberCheckpoint)
                    .where(SubscriberCheckpoint.subscriber == name, SubscriberCheckpoint.last_seq < ev.seq)
                    .values(last_seq=ev.seq)
                )
                db.commit()
            except Exception:
                # left at the failed event; retried on the next dispatch
                db.rollback()
                log.exception("subscriber %s failed on event %s (order %s)", name, ev.seq, ev.order_id)
                break
            delivered += 1
    return delivered


def latest_seq(db: Session, theater_id: str | None = None) -> int:
    q = select(func.max(OrderEvent.seq))
    if theater_id:
        q = q.where(OrderEvent.theater_id == theater_id)
    return int(db.scalar(q) or 0)


def events_since(db: Session, theater_id: str, since: int = 0, limit: int = 500) -> list[OrderEvent]:
    return list(db.scalars(
        select(OrderEvent)
        .where(OrderEvent.theater_id == theater_id, OrderEvent.seq > since)
        .order_by(OrderEvent.seq)
        .limit(limit)
    ).all())


def serialize_event(ev: OrderEvent) -> dict:
    out = {"seq": ev.seq, "kind": ev.kind, "theaterId": ev.theater_id, "createdAt": _iso(ev.created_at)}
    if ev.kind == STOCK_LOW:
        out.update(productId=ev.order_id, stock=ev.payload)
    else:
        out.update(orderId=ev.order_id, version=ev.order_version, order=ev.payload)
    return out
