"""Theater dashboard aggregates.

Aggregates are built from per (theater, business day) slices read from the
order store. ``DashboardCache`` keeps slices in process and, before serving,
catches up on the order outbox since its cursor: every event drops the slice
of the day it touched. The cursor doubles as the dashboard version, so callers
can ask ``ifVersion`` and get ``notModified`` back.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cinepos.models.core import Order, Product
from cinepos.services import events
from cinepos.services.gateway_config import dashboard_bucket
from cinepos.services.order_store import REVENUE_STATUSES, _iso, business_date
from cinepos.services.pricing import rupees

log = logging.getLogger(__name__)

BUCKETS = ("pos", "kiosk", "online")
RECENT = 10
TOP_PRODUCTS = 10
MAX_RANGE_DAYS = 366


@dataclass
class DaySlice:
    day: date
    orders: int = 0
    revenue: int = 0
    channels: dict = field(default_factory=dict)     # (bucket, method) -> [orders, amount]
    categories: dict = field(default_factory=dict)   # name -> [quantity, amount]
    products: dict = field(default_factory=dict)     # product id -> [name, quantity, amount]
    recent: list = field(default_factory=list)


def compute_slice(db: Session, theater_id: str, day: date) -> DaySlice:
    s = DaySlice(day=day)
    rows = db.scalars(select(Order).where(Order.theater_id == theater_id, Order.business_date == day)).all()
    for o in rows:
        s.orders += 1
        s.recent.append({
            "orderId": o.id,
            "orderNumber": o.order_number,
            "customerName": o.customer_name,
            "source": o.source,
            "paymentMethod": o.payment_method.value,
            "status": o.status.value,
            "amount": rupees(o.total),
            "createdAt": _iso(o.created_at),
        })
        if o.status not in REVENUE_STATUSES:
            continue
        s.revenue += o.total
        cell = s.channels.setdefault((dashboard_bucket(o.source), o.payment_method.value), [0, 0])
        cell[0] += 1
        cell[1] += o.total
        for it in o.items:
            cat = s.categories.setdefault(it.category or "Uncategorized", [0, 0])
            cat[0] += it.quantity
            cat[1] += it.line_total
            prod = s.products.setdefault(it.product_id, [it.name, 0, 0])
            prod[1] += it.quantity
            prod[2] += it.line_total
    s.recent.sort(key=lambda r: (r["createdAt"] or "", r["orderNumber"]), reverse=True)
    s.recent = s.recent[:RECENT]
    return s


def _days(start: date, end: date) -> list[date]:
    if end < start:
        start, end = end, start
    if (end - start).days >= MAX_RANGE_DAYS:
        start = end - timedelta(days=MAX_RANGE_DAYS - 1)
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def _product_counts(db: Session, theater_id: str) -> tuple[int, int]:
    total = db.scalar(select(func.count(Product.id)).where(Product.theater_id == theater_id)) or 0
    active = db.scalar(select(func.count(Product.id)).where(
        Product.theater_id == theater_id, Product.is_active.is_(True))) or 0
    return int(active), int(total)


def assemble(slices: list[DaySlice], today: DaySlice, products: tuple[int, int], version: int) -> dict:
    channels = {b: {"amount": 0, "orders": 0, "methods": {}} for b in BUCKETS}
    categories: dict[str, list[int]] = {}
    top: dict[str, list] = {}
    recent: list[dict] = []
    for s in slices:
        for (bucket, method), (n, amount) in s.channels.items():
            ch = channels[bucket]
            ch["orders"] += n
            ch["amount"] += amount
            ch["methods"][method] = ch["methods"].get(method, 0) + amount
        for name, (qty, amount) in s.categories.items():
            c = categories.setdefault(name, [0, 0])
            c[0] += qty
            c[1] += amount
        for pid, (name, qty, amount) in s.products.items():
            p = top.setdefault(pid, [name, 0, 0])
            p[1] += qty
            p[2] += amount
        recent.extend(s.recent)
    recent.sort(key=lambda r: (r["createdAt"] or "", r["orderNumber"]), reverse=True)

    return {
        "version": version,
        "range": {"startDate": slices[0].day.isoformat(), "endDate": slices[-1].day.isoformat()},
        "stats": {
            "todayRevenue": rupees(today.revenue),
            "activeProducts": products[0],
            "totalProducts": products[1],
            "totalOrders": sum(s.orders for s in slices),
            "totalRevenue": rupees(sum(s.revenue for s in slices)),
        },
        "channelBreakdown": {
            b: {
                "amount": rupees(ch["amount"]),
                "orders": ch["orders"],
                "methods": {m: rupees(v) for m, v in sorted(ch["methods"].items())},
            }
            for b, ch in channels.items()
        },
        "salesOverTime": [
            {"date": s.day.isoformat(), "revenue": rupees(s.revenue), "orders": s.orders} for s in slices
        ],
        "categoryEarnings": [
            {"category": name, "quantity": qty, "amount": rupees(amount)}
            for name, (qty, amount) in sorted(categories.items(), key=lambda kv: (-kv[1][1], kv[0]))
        ],
        "recentTransactions": recent[:RECENT],
        "topProducts": [
            {"productId": pid, "name": name, "quantity": qty, "revenue": rupees(amount)}
            for pid, (name, qty, amount) in sorted(top.items(), key=lambda kv: (-kv[1][1], -kv[1][2], kv[0]))
        ][:TOP_PRODUCTS],
    }


def compute_dashboard(db: Session, theater_id: str, start: date, end: date) -> dict:
    """Straight from the order store, no cache."""
    days = _days(start, end)
    slices = [compute_slice(db, theater_id, d) for d in days]
    today = compute_slice(db, theater_id, business_date())
    return assemble(slices, today, _product_counts(db, theater_id), events.latest_seq(db, theater_id))


class DashboardCache:
    def __init__(self):
        self._lock = threading.Lock()
        self._slices: dict[tuple[str, date], DaySlice] = {}
        self._cursors: dict[str, int] = {}
        self.invalidations = 0

    def _drop(self, theater_id: str, day: date | None = None):
        for key in [k for k in self._slices if k[0] == theater_id and (day is None or k[1] == day)]:
            del self._slices[key]
            self.invalidations += 1

    def _catch_up(self, db: Session, theater_id: str) -> int:
        cursor = self._cursors.get(theater_id)
        if cursor is None:
            self._drop(theater_id)
            cursor = events.latest_seq(db, theater_id)
        while True:
            batch = events.events_since(db, theater_id, cursor, limit=1000)
            for ev in batch:
                if ev.kind in events.ORDER_KINDS:
                    self._drop(theater_id, date.fromisoformat(ev.payload["businessDate"]))
                cursor = ev.seq
            if len(batch) < 1000:
                break
        self._cursors[theater_id] = cursor
        return cursor

    def _slice(self, db: Session, theater_id: str, day: date) -> DaySlice:
        key = (theater_id, day)
        s = self._slices.get(key)
        if s is None:
            s = self._slices[key] = compute_slice(db, theater_id, day)
        return s

    def dashboard(self, db: Session, theater_id: str, start: date, end: date, if_version: int | None = None) -> dict:
        with self._lock:
            version = self._catch_up(db, theater_id)
            if if_version is not None and version <= if_version:
                return {"version": version, "notModified": True}
            slices = [self._slice(db, theater_id, d) for d in _days(start, end)]
            today = self._slice(db, theater_id, business_date())
            return assemble(slices, today, _product_counts(db, theater_id), version)

    def invalidate(self, theater_id: str | None = None):
        with self._lock:
            if theater_id is None:
                self.invalidations += len(self._slices)
                self._slices.clear()
                self._cursors.clear()
            else:
                self._drop(theater_id)
                self._cursors.pop(theater_id, None)


dashboard_cache = DashboardCache()
