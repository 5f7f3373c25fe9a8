from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cinepos.db import get_db
from cinepos.deps import ADMIN_ROLES, current_user, require_role, require_theater_access
from cinepos.errors import ValidationFailed
from cinepos.models.core import Channel, User
from cinepos.schemas.orders import GatewayCreateIn, GatewayVerifyIn
from cinepos.services import lifecycle
from cinepos.services import order_store as store
from cinepos.services.gateway_config import config_cache

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/config/{theater_id}")
def payment_config(theater_id: str, channel: str = "kiosk",
                   db: Session = Depends(get_db), user: User = Depends(current_user)):
    """Provider, accepted methods and public key id; clients enable non-cash methods only from this."""
    require_theater_access(user, theater_id)
    try:
        ch = Channel(channel.lower())
    except ValueError:
        raise ValidationFailed(f"unknown channel {channel!r}")
    return config_cache.get(db, theater_id, ch).public()


@router.post("/create")
def create_payment(body: GatewayCreateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_theater_access(user, store.get(db, body.order_id).theater_id)
    return lifecycle.create_gateway_payment(db, body.order_id, body.payment_method)


@router.post("/verify")
def verify_payment(body: GatewayVerifyIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    """Relay of the provider's success/failure callback; 402 GATEWAY_VERIFY_FAILED on a bad signature."""
    require_theater_access(user, store.get(db, body.order_id).theater_id)
    return lifecycle.verify_gateway_callback(db, body.model_dump(by_alias=True, exclude_none=True))


@router.post("/webhook/razorpay")
async def razorpay_webhook(request: Request, db: Session = Depends(get_db)):
    """Provider-to-server notification; authenticated by ``X-Razorpay-Signature`` over the raw body."""
    raw = await request.body()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationFailed("webhook body is not UTF-8")
    return await run_in_threadpool(
        lifecycle.razorpay_webhook, db, text, request.headers.get("X-Razorpay-Signature"))


@router.post("/{order_id}/sync-status")
def sync_payment_status(order_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    """Pull the provider's view of a stuck payment and settle the order if it is final."""
    require_theater_access(user, store.get(db, order_id).theater_id)
    return lifecycle.reconcile_order(db, order_id)


@router.post("/sync-all-pending/{theater_id}")
def sync_all_pending(theater_id: str, limit: int = Query(default=100, ge=1, le=100),
                     db: Session = Depends(get_db), user: User = Depends(require_role(*ADMIN_ROLES))):
    require_theater_access(user, theater_id)
    return lifecycle.reconcile_pending(db, theater_id, limit)
