from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from cinepos.db import get_db
from cinepos.deps import current_user, require_theater_access
from cinepos.models.core import User
from cinepos.schemas.orders import OrderBatch
from cinepos.services import events, lifecycle

router = APIRouter(prefix="/sync", tags=["sync"])

@router.post("/orders")
def push_orders(body: OrderBatch, db: Session = Depends(get_db), user: User = Depends(current_user)):
    """Replay a drained offline queue. Entries are accepted strictly in the order sent."""
    for o in body.orders:
        require_theater_access(user, o.theater_id)
    results = lifecycle.accept_batch(db, body.orders, actor=user.id)
    return {"results": results, "synced": sum(1 for r in results if r["ok"])}

@router.get("/pull")
def pull(theater_id: str = Query(alias="theaterId"), since: int = 0, limit: int = 500,
         db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_theater_access(user, theater_id)
    evs = events.events_since(db, theater_id, since, min(max(limit, 1), 1000))
    out = [events.serialize_event(e) for e in evs]
    next_since = out[-1]["seq"] if out else since
    return {"events": out, "next_since": next_since}
