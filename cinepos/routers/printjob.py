from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from cinepos.db import get_db
from cinepos.deps import current_user, require_theater_access
from cinepos.errors import NotFound
from cinepos.models.common import utcnow
from cinepos.models.core import PrintJob, User
from cinepos.services import events
from cinepos.services.print_queue import pending_jobs, serialize_job
from cinepos.util.audit import audit

router = APIRouter(prefix="/print", tags=["print"])


@router.get("/queue")
def print_queue(theater_id: str = Query(alias="theaterId"), limit: int = 50,
                db: Session = Depends(get_db), user: User = Depends(current_user)):
    """
    Unprinted jobs for a theater, oldest first.
    The counter client polls this, hands jobs to its local bridge and acks them.
    """
    require_theater_access(user, theater_id)
    # catch up on anything a crashed request left undelivered
    events.dispatch_pending(db)
    return [serialize_job(j) for j in pending_jobs(db, theater_id, min(max(limit, 1), 200))]


@router.post("/jobs/{job_id}/ack")
def ack_job(job_id: str, reason: str | None = None,
            db: Session = Depends(get_db), user: User = Depends(current_user)):
    job = db.get(PrintJob, job_id)
    if not job:
        raise NotFound("print job not found")
    require_theater_access(user, job.theater_id)
    first = job.printed_at is None
    if first:
        job.printed_at = utcnow()
        audit(db, user.id, "Order", job.order_id, "PRINT_" + job.kind.value.upper(), reason=reason or job.category or None)
        db.commit()
    return {"printed": True, "id": job.id, "firstPrint": first}
