from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from cinepos.db import get_db
from cinepos.deps import current_user, require_theater_access
from cinepos.errors import NotFound
from cinepos.models.core import Theater, User
from cinepos.services.dashboard import dashboard_cache
from cinepos.services.order_store import window

router = APIRouter(prefix="/theater-dashboard", tags=["dashboard"])


@router.get("/{theater_id}")
def theater_dashboard(
    theater_id: str,
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    if_version: int | None = Query(default=None, alias="ifVersion"),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    """
    Stats, channel breakdown, sales over time, category earnings, recent
    transactions and top products for a date range (default: last 7 days).
    Pass ``ifVersion`` to get ``{"notModified": true}`` when nothing changed.
    """
    require_theater_access(user, theater_id)
    if not db.get(Theater, theater_id):
        raise NotFound("theater not found")
    start, end = window(start_date, end_date)
    return dashboard_cache.dashboard(db, theater_id, start, end, if_version)
