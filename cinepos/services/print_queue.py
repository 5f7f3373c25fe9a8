"""Server-side print queue.

Fed by the outbox: when an order becomes PAID it gets one aggregated GST bill
job, plus one docket per distinct item category when the order spans more
than one category. Jobs are unique on (order, kind, category), so redelivered
events are no-ops.
"""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from cinepos.models.core import OrderEvent, PrintJob, PrintJobKind, Theater
from cinepos.services.events import ORDER_KINDS, subscriber

log = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


def _header(theater: Theater | None, order: dict) -> dict:
    return {
        "theater": {
            "name": theater.name if theater else "",
            "gstin": theater.gstin if theater else None,
            "address": theater.address if theater else None,
            "phone": theater.phone if theater else None,
        },
        "order": {
            "id": order["id"],
            "orderNumber": order["orderNumber"],
            "businessDate": order["businessDate"],
            "source": order["source"],
            "customerName": order["customerName"],
            "seat": order.get("seat"),
            "qrName": order.get("qrName"),
            "createdAt": order["createdAt"],
        },
    }


def build_bill(theater: Theater | None, order: dict) -> dict:
    """Aggregated GST receipt."""
    return {
        **_header(theater, order),
        "items": [
            {
                "name": it["name"],
                "size": it.get("size"),
                "quantity": it["quantity"],
                "unitPrice": it["unitPrice"],
                "taxRate": it["taxRate"],
                "lineTotal": it["lineTotal"],
            }
            for it in order["items"]
        ],
        "pricing": order["pricing"],
        "payment": {"method": order["payment"]["method"], "status": order["payment"]["status"]},
        "footer": theater.receipt_footer if theater else None,
    }


def build_dockets(theater: Theater | None, order: dict) -> dict[str, dict]:
    """One preparation docket per category; no prices."""
    grouped: dict[str, list[dict]] = {}
    for it in order["items"]:
        grouped.setdefault(it.get("category") or UNCATEGORIZED, []).append({
            "name": it["name"],
            "size": it.get("size"),
            "quantity": it["quantity"],
            "specialInstructions": it.get("specialInstructions"),
        })
    return {cat: {**_header(theater, order), "category": cat, "items": lines} for cat, lines in grouped.items()}


def _add_job(db: Session, ev: OrderEvent, kind: PrintJobKind, category: str, bill: dict) -> bool:
    exists = db.scalar(select(PrintJob.id).where(
        PrintJob.order_id == ev.order_id, PrintJob.kind == kind, PrintJob.category == category,
    ))
    if exists:
        return False
    db.add(PrintJob(theater_id=ev.theater_id, order_id=ev.order_id, kind=kind, category=category, bill=bill))
    return True


@subscriber("print_queue")
def on_order_event(db: Session, ev: OrderEvent):
    order = ev.payload
    if ev.kind not in ORDER_KINDS or order.get("status") != "PAID":
        return
    theater = db.get(Theater, ev.theater_id)
    added = _add_job(db, ev, PrintJobKind.GST_BILL, "", build_bill(theater, order))
    dockets = build_dockets(theater, order)
    if len(dockets) > 1:
        for cat, docket in dockets.items():
            added = _add_job(db, ev, PrintJobKind.CATEGORY_DOCKET, cat, docket) or added
    if added:
        db.flush()
        log.info("queued print jobs for order %s", ev.order_id)


def pending_jobs(db: Session, theater_id: str, limit: int = 50) -> list[PrintJob]:
    return list(db.scalars(
        select(PrintJob)
        .where(PrintJob.theater_id == theater_id, PrintJob.printed_at.is_(None))
        .order_by(PrintJob.created_at, PrintJob.order_id, PrintJob.kind, PrintJob.category)
        .limit(limit)
    ).all())


def serialize_job(job: PrintJob) -> dict:
    return {
        "id": job.id,
        "orderId": job.order_id,
        "theaterId": job.theater_id,
        "kind": job.kind.value,
        "category": job.category or None,
        "bill": job.bill,
        "printed": job.printed_at is not None,
    }
