from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from sqlalchemy import func, select
from datetime import date

from cinepos.db import get_db
from cinepos.deps import current_user, require_theater_access
from cinepos.models.core import Order, OrderStatus, User
from cinepos.services.gateway_config import dashboard_bucket
from cinepos.services.order_store import REVENUE_STATUSES, window
from cinepos.services.pricing import rupees

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/daily_sales")
def daily_sales(
    theater_id: str = Query(alias="theaterId"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    """
    Per business day, per channel bucket, per payment method sales.
    Only PAID/COMPLETED orders count as sales; cancellations are reported alongside.
    """
    require_theater_access(user, theater_id)
    start, end = window(start_date, end_date)

    rows = db.execute(
        select(
            Order.business_date, Order.source, Order.payment_method, Order.status,
            func.count(Order.id), func.sum(Order.subtotal), func.sum(Order.cgst),
            func.sum(Order.sgst), func.sum(Order.tax), func.sum(Order.total_discount), func.sum(Order.total),
        )
        .where(Order.theater_id == theater_id, Order.business_date >= start, Order.business_date <= end)
        .group_by(Order.business_date, Order.source, Order.payment_method, Order.status)
    ).all()

    days: dict[date, dict] = {}
    for day, source, method, status, n, subtotal, cgst, sgst, tax, discount, total in rows:
        d = days.setdefault(day, {"orders": 0, "cancelledOrders": 0, "cancelledAmount": 0, "buckets": {}})
        if status == OrderStatus.CANCELLED:
            d["cancelledOrders"] += n
            d["cancelledAmount"] += int(total or 0)
        if status not in REVENUE_STATUSES:
            continue
        d["orders"] += n
        key = (dashboard_bucket(source), method.value)
        b = d["buckets"].setdefault(key, {"orders": 0, "subtotal": 0, "cgst": 0, "sgst": 0, "tax": 0, "discounts": 0, "total": 0})
        b["orders"] += n
        b["subtotal"] += int(subtotal or 0)
        b["cgst"] += int(cgst or 0)
        b["sgst"] += int(sgst or 0)
        b["tax"] += int(tax or 0)
        b["discounts"] += int(discount or 0)
        b["total"] += int(total or 0)

    out = []
    for day in sorted(days):
        d = days[day]
        buckets = [
            {"channel": ch, "paymentMethod": m, "orders": b["orders"],
             **{k: rupees(v) for k, v in b.items() if k != "orders"}}
            for (ch, m), b in sorted(d["buckets"].items())
        ]
        out.append({
            "date": day.isoformat(),
            "orders": d["orders"],
            "total": rupees(sum(b["total"] for b in d["buckets"].values())),
            "cancelledOrders": d["cancelledOrders"],
            "cancelledAmount": rupees(d["cancelledAmount"]),
            "buckets": buckets,
        })
    return {"theaterId": theater_id, "startDate": start.isoformat(), "endDate": end.isoformat(), "days": out}
