"""Inventory ledger: the only writer of stock counters.

Counters live on ``ProductStock`` and are changed exclusively with conditional
``UPDATE`` statements, so concurrent reservations for a scarce product
serialize in the database and the loser sees ``INSUFFICIENT_STOCK``.

Per product the ledger keeps ``available + reserved + committed == initial + restocked``.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from cinepos.config import settings
from cinepos.errors import InsufficientStock, NotFound
from cinepos.models.common import utcnow
from cinepos.models.core import Product, ProductStock, ReservationState, StockReservation

log = logging.getLogger(__name__)


def _merge(items) -> "OrderedDict[str, int]":
    # one counter update per product, taken in product-id order to keep lock order stable
    merged: dict[str, int] = {}
    for product_id, qty in items:
        merged[product_id] = merged.get(product_id, 0) + int(qty)
    return OrderedDict(sorted(merged.items()))


class InventoryLedger:
    def __init__(self, ttl_minutes: int | None = None):
        self.ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.RESERVATION_TTL_MIN)

    # --- stock administration ---------------------------------------------

    def ensure_stock(self, db: Session, theater_id: str, product_id: str, initial: int = 0) -> ProductStock:
        row = db.get(ProductStock, product_id)
        if row is None:
            row = ProductStock(
                product_id=product_id, theater_id=theater_id,
                initial=initial, available=initial, reserved=0, committed=0, restocked=0,
            )
            db.add(row)
            db.flush()
        return row

    def restock(self, db: Session, product_id: str, qty: int) -> ProductStock:
        res = db.execute(
            update(ProductStock)
            .where(ProductStock.product_id == product_id)
            .values(
                available=ProductStock.available + qty,
                restocked=ProductStock.restocked + qty,
                version=ProductStock.version + 1,
            )
        )
        if res.rowcount != 1:
            raise NotFound(f"no stock row for product {product_id}")
        db.flush()
        row = db.get(ProductStock, product_id)
        db.refresh(row)
        return row

    def available(self, db: Session, product_id: str) -> int:
        return int(db.scalar(select(ProductStock.available).where(ProductStock.product_id == product_id)) or 0)

    # --- reservations -----------------------------------------------------

    def reserve(self, db: Session, theater_id: str, order_id: str, items, now: datetime | None = None):
        """All-or-nothing reservation of ``items`` (pairs of product id and quantity)."""
        now = now or utcnow()
        applied: list[tuple[str, int]] = []
        try:
            for product_id, qty in _merge(items).items():
                res = db.execute(
                    update(ProductStock)
                    .where(
                        ProductStock.product_id == product_id,
                        ProductStock.theater_id == theater_id,
                        ProductStock.available >= qty,
                    )
                    .values(
                        available=ProductStock.available - qty,
                        reserved=ProductStock.reserved + qty,
                        version=ProductStock.version + 1,
                    )
                )
                if res.rowcount != 1:
                    raise InsufficientStock(product_id, self.available(db, product_id))
                applied.append((product_id, qty))
        except InsufficientStock:
            for product_id, qty in applied:
                db.execute(
                    update(ProductStock)
                    .where(ProductStock.product_id == product_id)
                    .values(
                        available=ProductStock.available + qty,
                        reserved=ProductStock.reserved - qty,
                        version=ProductStock.version + 1,
                    )
                )
            raise

        expires_at = now + self.ttl
        for product_id, qty in applied:
            db.add(StockReservation(
                order_id=order_id, theater_id=theater_id, product_id=product_id,
                quantity=qty, state=ReservationState.ACTIVE, expires_at=expires_at,
            ))
        db.flush()
        log.info("reserved stock for order %s: %s", order_id, applied)

    def _settle(self, db: Session, order_id: str, to_state: ReservationState) -> int:
        rows = db.scalars(
            select(StockReservation).where(
                StockReservation.order_id == order_id,
                StockReservation.state == ReservationState.ACTIVE,
            )
        ).all()
        moved = 0
        for r in rows:
            # claim the reservation first; a concurrent settle of the same row loses here
            claimed = db.execute(
                update(StockReservation)
                .where(StockReservation.id == r.id, StockReservation.state == ReservationState.ACTIVE)
                .values(state=to_state, version=StockReservation.version + 1)
            )
            if claimed.rowcount != 1:
                continue
            if to_state == ReservationState.COMMITTED:
                values = dict(reserved=ProductStock.reserved - r.quantity,
                              committed=ProductStock.committed + r.quantity)
            else:
                values = dict(reserved=ProductStock.reserved - r.quantity,
                              available=ProductStock.available + r.quantity)
            db.execute(
                update(ProductStock)
                .where(ProductStock.product_id == r.product_id)
                .values(version=ProductStock.version + 1, **values)
            )
            moved += 1
        db.flush()
        db.expire_all()
        return moved

    def commit(self, db: Session, order_id: str) -> int:
        """Turn the order's reservation into a permanent decrement. Idempotent."""
        n = self._settle(db, order_id, ReservationState.COMMITTED)
        if n:
            log.info("committed %d reservation line(s) for order %s", n, order_id)
        return n

    def release(self, db: Session, order_id: str) -> int:
        """Give reserved stock back. Idempotent; committed lines are untouched."""
        n = self._settle(db, order_id, ReservationState.RELEASED)
        if n:
            log.info("released %d reservation line(s) for order %s", n, order_id)
        return n

    # --- low stock --------------------------------------------------------

    @staticmethod
    def threshold_for(product: Product) -> int:
        return product.min_stock if product.min_stock is not None else settings.LOW_STOCK_THRESHOLD

    @staticmethod
    def _threshold():
        return func.coalesce(Product.min_stock, settings.LOW_STOCK_THRESHOLD)

    def low_stock(self, db: Session, theater_id: str) -> list[tuple[ProductStock, Product]]:
        """Active products at or below their threshold."""
        return [tuple(row) for row in db.execute(
            select(ProductStock, Product)
            .join(Product, Product.id == ProductStock.product_id)
            .where(
                ProductStock.theater_id == theater_id,
                Product.is_active.is_(True),
                ProductStock.available <= self._threshold(),
            )
            .order_by(Product.name)
        ).all()]

    def low_stock_theaters(self, db: Session) -> list[str]:
        """Theaters with a low-stock alert to raise or a recovered one to re-arm."""
        due = or_(
            and_(ProductStock.low_stock_alerted.is_(False), ProductStock.available <= self._threshold(),
                 Product.is_active.is_(True)),
            and_(ProductStock.low_stock_alerted.is_(True), ProductStock.available > self._threshold()),
        )
        return sorted(db.scalars(
            select(ProductStock.theater_id).join(Product, Product.id == ProductStock.product_id).where(due).distinct()
        ).all())

    def claim_low_stock(self, db: Session, theater_id: str) -> list[tuple[ProductStock, Product]]:
        """Flag products newly at or below their threshold; each is returned once until it recovers."""
        recovered = db.scalars(
            select(ProductStock.product_id)
            .join(Product, Product.id == ProductStock.product_id)
            .where(
                ProductStock.theater_id == theater_id,
                ProductStock.low_stock_alerted.is_(True),
                ProductStock.available > self._threshold(),
            )
        ).all()
        if recovered:
            db.execute(
                update(ProductStock)
                .where(ProductStock.product_id.in_(recovered))
                .values(low_stock_alerted=False)
            )
        claimed = []
        for stock, product in self.low_stock(db, theater_id):
            res = db.execute(
                update(ProductStock)
                .where(ProductStock.product_id == stock.product_id, ProductStock.low_stock_alerted.is_(False))
                .values(low_stock_alerted=True)
            )
            if res.rowcount == 1:
                claimed.append((stock, product))
        db.flush()
        return claimed

    # --- queries ----------------------------------------------------------

    def expired_orders(self, db: Session, now: datetime | None = None, theater_id: str | None = None) -> list[str]:
        now = now or utcnow()
        q = (
            select(StockReservation.order_id)
            .where(StockReservation.state == ReservationState.ACTIVE, StockReservation.expires_at < now)
            .distinct()
        )
        if theater_id:
            q = q.where(StockReservation.theater_id == theater_id)
        return sorted(db.scalars(q).all())

    def reservation_states(self, db: Session, order_id: str) -> set[ReservationState]:
        return set(db.scalars(
            select(StockReservation.state).where(StockReservation.order_id == order_id)
        ).all())

    def active_reserved(self, db: Session, product_id: str) -> int:
        rows = db.scalars(
            select(StockReservation.quantity).where(
                StockReservation.product_id == product_id,
                StockReservation.state == ReservationState.ACTIVE,
            )
        ).all()
        return sum(rows)


ledger = InventoryLedger()
