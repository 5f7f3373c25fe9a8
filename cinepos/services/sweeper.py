"""Reservation TTL sweeper.

One cooperative task per process. Each round looks for reservations past their
expiry, takes a per-theater ``SweepLock`` row (a lease with its own TTL, taken
by conditional update) and cancels the affected orders through the lifecycle
coordinator, which releases stock through the ledger. The same round raises
low-stock alerts on the theater's event stream.
"""
import asyncio
import logging
import os
import socket
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from cinepos.config import settings
from cinepos.db import SessionLocal
from cinepos.models.common import utcnow
from cinepos.models.core import ReservationState, StockReservation, SweepLock
from cinepos.services import events, lifecycle
from cinepos.services.inventory import ledger

log = logging.getLogger(__name__)

HOLDER = f"{socket.gethostname()}:{os.getpid()}"


def try_lock(db: Session, name: str, holder: str = HOLDER, now: datetime | None = None) -> bool:
    now = now or utcnow()
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    db.execute(insert(SweepLock).values(name=name).on_conflict_do_nothing(index_elements=["name"]))
    res = db.execute(
        update(SweepLock)
        .where(
            SweepLock.name == name,
            or_(SweepLock.holder.is_(None), SweepLock.holder == holder, SweepLock.expires_at < now),
        )
        .values(holder=holder, expires_at=now + timedelta(seconds=settings.SWEEP_LOCK_TTL_SEC))
    )
    db.commit()
    return res.rowcount == 1


def unlock(db: Session, name: str, holder: str = HOLDER):
    db.execute(
        update(SweepLock)
        .where(SweepLock.name == name, SweepLock.holder == holder)
        .values(holder=None, expires_at=None)
    )
    db.commit()


def sweep_theater(db: Session, theater_id: str, now: datetime | None = None) -> list[str]:
    expired = []
    for order_id in ledger.expired_orders(db, now, theater_id):
        order = lifecycle.expire_order(db, order_id)
        if order is not None:
            expired.append(order_id)
    if expired:
        log.info("sweeper cancelled %d order(s) for theater %s", len(expired), theater_id)
    return expired


def sweep_once(db: Session, now: datetime | None = None, holder: str = HOLDER) -> list[str]:
    """One round over every theater with expired reservations. Returns the order ids handled."""
    now = now or utcnow()
    theaters = sorted(set(db.scalars(
        select(StockReservation.theater_id).where(
            StockReservation.state == ReservationState.ACTIVE, StockReservation.expires_at < now,
        )
    ).all()))
    db.commit()
    handled: list[str] = []
    for theater_id in theaters:
        name = f"sweep:{theater_id}"
        if not try_lock(db, name, holder, now):
            log.debug("sweep lock %s held elsewhere", name)
            continue
        try:
            handled.extend(sweep_theater(db, theater_id, now))
        finally:
            unlock(db, name, holder)
    return handled


def alert_low_stock(db: Session, theater_id: str) -> list[str]:
    """Publish one ``stock.low`` event per product that newly fell to its threshold."""
    try:
        claimed = ledger.claim_low_stock(db, theater_id)
        for stock, product in claimed:
            events.publish_stock_alert(db, stock, product, ledger.threshold_for(product))
    except Exception:
        db.rollback()
        raise
    db.commit()
    if claimed:
        log.warning("low stock in theater %s: %s", theater_id,
                    ", ".join(f"{p.name}={s.available}" for s, p in claimed))
    return [p.id for _, p in claimed]


def low_stock_once(db: Session, now: datetime | None = None, holder: str = HOLDER) -> list[str]:
    """Low-stock pass over every theater that has an alert due. Returns the product ids reported."""
    theaters = ledger.low_stock_theaters(db)
    db.commit()
    reported: list[str] = []
    for theater_id in theaters:
        name = f"lowstock:{theater_id}"
        if not try_lock(db, name, holder, now):
            continue
        try:
            reported.extend(alert_low_stock(db, theater_id))
        finally:
            unlock(db, name, holder)
    return reported


def _round():
    with SessionLocal() as db:
        handled = sweep_once(db)
        low_stock_once(db)
        return handled


async def run_forever(interval: float | None = None):
    interval = interval or settings.SWEEP_INTERVAL_SEC
    log.info("reservation sweeper started (every %ss)", interval)
    while True:
        try:
            await asyncio.to_thread(_round)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("sweep round failed")
        await asyncio.sleep(interval)
