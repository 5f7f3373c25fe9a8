"""Order lifecycle coordinator.

All three channels converge on ``accept_order``. The coordinator is the only
writer of order rows; every status change goes through
``order_store.transition`` and carries its ledger effect and an outbox event
in the same database transaction:

    PAID / COMPLETED      -> ledger.commit
    CANCELLED / FAILED    -> ledger.release (unpaid orders)

Durable subscribers (the print queue) are fed after each commit.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cinepos.config import settings
from cinepos.errors import (
    Conflict, DeadlineExceeded, GatewayUnavailable, GatewayVerifyFailed, NotFound,
    OrderError, StalePricing, ValidationFailed,
)
from cinepos.models.common import new_id, utcnow
from cinepos.models.core import (
    GatewayProvider, Order, OrderItem, OrderStatus, PaymentStatus, PaymentTransaction, PayMethod, Product,
    Theater, TxnStatus,
)
from cinepos.services import events
from cinepos.services import order_store as store
from cinepos.services import print_queue  # noqa: F401  (registers the print subscriber)
from cinepos.services.gateway_config import (
    channel_for, check_method, config_cache, normalize_method, normalize_source, order_type_for,
)
from cinepos.services.gateways import PAID, PENDING, RazorpayGateway, gateway_for
from cinepos.services.inventory import ledger
from cinepos.services.pricing import PriceLine, compute_bill, effective_price, rupees, to_paise

log = logging.getLogger(__name__)

PAYMENT_TIMEOUT = "payment_timeout"
GATEWAY_TIMEOUT = "gateway_timeout"
GATEWAY_UNAVAILABLE = "gateway_unavailable"
SYNCED, UP_TO_DATE = "synced", "up_to_date"
OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED)


@dataclass
class Deadline:
    seconds: float
    started: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        return self.seconds - (time.monotonic() - self.started)

    def check(self, stage: str):
        if self.remaining() <= 0:
            raise DeadlineExceeded(f"deadline exceeded during {stage}")

    def extended(self, seconds: float) -> "Deadline":
        """Same start, longer allowance (gateway calls)."""
        return Deadline(max(self.seconds, seconds), self.started)


@dataclass
class AcceptResult:
    order: Order
    body: dict
    replayed: bool = False


def _finish(db: Session):
    db.commit()
    events.dispatch_pending(db)


# --- responses ----------------------------------------------------------------

def _latest_txn(db: Session, order_id: str, status: TxnStatus | None = None) -> PaymentTransaction | None:
    q = select(PaymentTransaction).where(PaymentTransaction.order_id == order_id)
    if status is not None:
        q = q.where(PaymentTransaction.status == status)
    return db.scalars(q.order_by(PaymentTransaction.created_at.desc())).first()


def serialize_txn(txn: PaymentTransaction) -> dict:
    return {
        "transactionId": txn.id,
        "provider": txn.provider.value,
        "providerOrderId": txn.provider_order_id,
        "amount": txn.amount,
        "currency": txn.currency,
        "providerParams": txn.provider_params or {},
    }


def order_response(db: Session, order: Order) -> dict:
    """Wire body for accept/replay: the order plus gateway parameters when a gateway is involved."""
    gateway_params = None
    if order.payment_method != PayMethod.CASH:
        txn = _latest_txn(db, order.id)
        if txn is not None:
            gateway_params = serialize_txn(txn)
    return {"order": store.serialize_order(order), "gatewayParams": gateway_params}


# --- accept -------------------------------------------------------------------

def _load_products(db: Session, theater_id: str, items) -> dict[str, Product]:
    ids = {it.product_id for it in items}
    rows = db.scalars(select(Product).where(Product.id.in_(ids))).unique().all()
    products = {p.id: p for p in rows}
    for it in items:
        p = products.get(it.product_id)
        if p is None or p.theater_id != theater_id:
            raise ValidationFailed(f"unknown product {it.product_id}", productId=it.product_id)
        if not p.is_active:
            raise ValidationFailed(f"product {it.product_id} is not available", productId=it.product_id)
        if it.quantity < 1:
            raise ValidationFailed("quantity must be >= 1", productId=it.product_id)
    return products


def _price_lines(items, products) -> list[PriceLine]:
    return [
        PriceLine(
            unit_price=effective_price(products[it.product_id].base_price, products[it.product_id].offer_price),
            quantity=it.quantity,
            tax_rate=Decimal(str(products[it.product_id].tax_rate or 0)),
            gst_type=products[it.product_id].gst_type.value,
            discount_percentage=Decimal(str(products[it.product_id].discount_percentage or 0)),
        )
        for it in items
    ]


def accept_order(db: Session, req, actor: str | None = None, deadline: Deadline | None = None) -> AcceptResult:
    """Validate, price, reserve and persist an order, then settle cash or start the gateway flow.

    ``req`` is an ``OrderCreate`` (see ``cinepos.schemas.orders``). A repeated
    idempotency key returns the original order instead of creating a new one.
    """
    deadline = deadline or Deadline(settings.REQUEST_DEADLINE_SEC)
    key = (req.idempotency_key or "").strip()
    if not key:
        raise ValidationFailed("idempotencyKey is required")

    existing = store.find_by_idempotency_key(db, req.theater_id, key)
    if existing is not None:
        return _resume(db, existing, deadline)

    source = normalize_source(req.source)
    method = normalize_method(req.payment_method)
    theater = db.get(Theater, req.theater_id)
    if theater is None or not theater.is_active:
        raise ValidationFailed(f"unknown or inactive theater {req.theater_id}")
    customer = (req.customer_name or "").strip()
    if not customer:
        raise ValidationFailed("customerName must not be empty")
    if not req.items:
        raise ValidationFailed("items must not be empty")
    products = _load_products(db, theater.id, req.items)

    channel = channel_for(source)
    check_method(config_cache.get(db, theater.id, channel), source, method)

    try:
        bill = compute_bill(_price_lines(req.items, products))
    except ValueError as e:
        raise ValidationFailed(str(e))
    client_total = to_paise(req.client_total) if req.client_total is not None else None
    if client_total is not None and abs(client_total - bill.total) > settings.PRICE_TOLERANCE_PAISE:
        raise StalePricing(
            f"client total {rupees(client_total)} differs from server total {rupees(bill.total)}",
            serverTotal=rupees(bill.total), pricing=bill.as_dict(),
        )

    now = utcnow()
    order_id = new_id()
    try:
        deadline.check("pricing")
        ledger.reserve(db, theater.id, order_id, [(it.product_id, it.quantity) for it in req.items], now)
        day = store.business_date(now)
        order = Order(
            id=order_id,
            theater_id=theater.id,
            order_number=store.allocate_order_number(db, theater, day),
            business_date=day,
            idempotency_key=key,
            source=source,
            order_type=order_type_for(source),
            channel=channel,
            customer_name=customer,
            qr_name=req.qr_name,
            seat=req.seat,
            created_by_user_id=actor,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_method=method,
            gross=bill.gross,
            subtotal=bill.subtotal,
            cgst=bill.cgst,
            sgst=bill.sgst,
            tax=bill.tax,
            total_discount=bill.total_discount,
            total=bill.total,
            client_total=client_total,
            created_at=now,
            updated_at=now,
        )
        for pos, (it, amounts) in enumerate(zip(req.items, bill.lines)):
            p = products[it.product_id]
            order.items.append(OrderItem(
                position=pos,
                product_id=p.id,
                name=p.name,
                category=p.category.name if p.category else None,
                image_url=p.image_url,
                quantity=it.quantity,
                unit_price=effective_price(p.base_price, p.offer_price),
                tax_rate=p.tax_rate,
                gst_type=p.gst_type,
                discount_percentage=p.discount_percentage,
                size_label=p.size_label,
                special_instructions=it.special_instructions,
                line_subtotal=amounts.line_subtotal,
                line_tax=amounts.line_tax,
                line_discount=amounts.line_discount,
                line_total=amounts.line_total,
            ))
        store.create(db, order)
        events.publish(db, order, events.ORDER_CREATED)
        deadline.check("persist")
        db.commit()
    except store.DuplicateOrder as dup:
        # lost a race on the same key; the winner's order is the answer
        return _resume(db, dup.order, deadline)
    except Exception:
        db.rollback()
        raise

    log.info("accepted order %s (%s) theater=%s source=%s method=%s total=%s",
             order.id, order.order_number, theater.id, source, method.value, order.total)
    if method == PayMethod.CASH:
        _settle_cash(db, order, actor or "system")
    else:
        _start_gateway(db, order, method, deadline)
    return AcceptResult(order=order, body=order_response(db, order))


def _resume(db: Session, order: Order, deadline: Deadline) -> AcceptResult:
    """Replay for a known idempotency key; finishes a step a previous attempt did not reach."""
    db.refresh(order)
    if order.status == OrderStatus.PENDING:
        try:
            if order.payment_method == PayMethod.CASH:
                _settle_cash(db, order, order.created_by_user_id or "system")
            elif _latest_txn(db, order.id) is None:
                _start_gateway(db, order, order.payment_method, deadline)
        except Conflict:
            # a concurrent attempt moved it first
            db.rollback()
            db.refresh(order)
    log.info("replayed order %s for idempotency key %s", order.id, order.idempotency_key)
    return AcceptResult(order=order, body=order_response(db, order), replayed=True)


def _settle_cash(db: Session, order: Order, actor: str):
    try:
        store.transition(
            db, order.id, OrderStatus.PENDING, OrderStatus.PAID,
            {"payment_status": PaymentStatus.PAID, "paid_at": utcnow()},
            actor=actor, reason="cash",
        )
        ledger.commit(db, order.id)
        events.publish(db, order)
    except Exception:
        db.rollback()
        raise
    _finish(db)


# --- gateway ------------------------------------------------------------------

def _start_gateway(db: Session, order: Order, method: PayMethod, deadline: Deadline):
    try:
        create_gateway_payment(db, order.id, method.value, deadline=deadline.extended(settings.GATEWAY_DEADLINE_SEC))
    except (DeadlineExceeded, GatewayUnavailable) as e:
        reason = GATEWAY_TIMEOUT if isinstance(e, DeadlineExceeded) else GATEWAY_UNAVAILABLE
        log.warning("gateway create for order %s failed: %s", order.id, e.kind)
        _abandon(db, order.id, reason)
        e.extra.update(orderId=order.id, orderStatus=OrderStatus.CANCELLED.value)
        raise


def _abandon(db: Session, order_id: str, reason: str):
    """PENDING -> CANCELLED with the reservation released; no-op if the order already moved."""
    try:
        order = store.transition(db, order_id, OrderStatus.PENDING, OrderStatus.CANCELLED,
                                 {"payment_status": PaymentStatus.FAILED}, actor="gateway", reason=reason)
        ledger.release(db, order_id)
        events.publish(db, order, reason=reason)
    except Conflict:
        db.rollback()
        return
    except Exception:
        db.rollback()
        raise
    _finish(db)


def create_gateway_payment(db: Session, order_id: str, payment_method: str, deadline: Deadline | None = None) -> dict:
    """Create (or return the open) provider-side payment order for ``order_id``."""
    deadline = deadline or Deadline(settings.GATEWAY_DEADLINE_SEC)
    order = store.get(db, order_id)
    db.refresh(order)
    method = normalize_method(payment_method)
    if method == PayMethod.CASH:
        raise ValidationFailed("cash payments do not use a gateway")
    if order.status not in (OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT):
        raise Conflict(f"order {order_id} is {order.status.value}", orderStatus=order.status.value)

    cfg = config_cache.get(db, order.theater_id, order.channel)
    check_method(cfg, order.source, method)

    open_txn = _latest_txn(db, order.id, TxnStatus.CREATED)
    if open_txn is not None and open_txn.method == method:
        return serialize_txn(open_txn)

    gw = gateway_for(cfg)
    created = gw.create_payment_order(order, method, timeout=deadline.remaining())
    try:
        txn = PaymentTransaction(
            order_id=order.id,
            theater_id=order.theater_id,
            provider=cfg.provider,
            method=method,
            provider_order_id=created.provider_order_id,
            amount=created.amount,
            currency=created.currency,
            status=TxnStatus.CREATED,
            provider_params=created.params,
        )
        db.add(txn)
        patch = {"payment_provider": cfg.provider, "payment_method": method}
        if order.status == OrderStatus.PENDING:
            store.transition(db, order.id, OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT, patch,
                             actor="gateway", reason=f"{cfg.provider.value}:{created.provider_order_id}")
            events.publish(db, order)
        else:
            for k, v in patch.items():
                setattr(order, k, v)
        db.flush()
    except Exception:
        db.rollback()
        raise
    _finish(db)
    log.info("gateway order %s created for order %s via %s", created.provider_order_id, order.id, cfg.provider.value)
    return serialize_txn(txn)


def _txn_by_provider_id(db: Session, provider_txn_id: str | None) -> PaymentTransaction | None:
    if not provider_txn_id:
        return None
    return db.scalar(select(PaymentTransaction).where(PaymentTransaction.provider_txn_id == provider_txn_id))


def _settle_gateway(db: Session, order: Order, txn: PaymentTransaction, ok: bool,
                    provider_txn_id: str | None, failure: str | None, via: str) -> Order:
    """Apply a provider outcome to a PENDING_PAYMENT order and its open transaction."""
    try:
        txn.provider_txn_id = provider_txn_id or txn.provider_txn_id
        if ok:
            txn.status = TxnStatus.PAID
            order = store.transition(
                db, order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.PAID,
                {"payment_status": PaymentStatus.PAID, "gateway_ref": txn.provider_txn_id, "paid_at": utcnow()},
                actor="gateway", reason=f"{via}_paid",
            )
            ledger.commit(db, order.id)
            events.publish(db, order)
        else:
            txn.status = TxnStatus.FAILED
            txn.failure_reason = (failure or "payment failed")[:200]
            order = store.transition(
                db, order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.FAILED,
                {"payment_status": PaymentStatus.FAILED, "gateway_ref": txn.provider_txn_id},
                actor="gateway", reason=f"{via}_failed",
            )
            ledger.release(db, order.id)
            events.publish(db, order, reason=failure)
    except Exception:
        db.rollback()
        raise
    _finish(db)
    return order


def verify_gateway_callback(db: Session, payload: dict) -> dict:
    """Finalize a gateway payment from the relayed callback. Idempotent on ``providerTxnId``.

    A callback without its signed fields is refused with ``ValidationFailed``
    and leaves the order untouched.
    """
    order = store.get(db, payload.get("orderId") or "")
    db.refresh(order)

    def _replay(prior: PaymentTransaction) -> dict:
        if prior.order_id != order.id:
            raise Conflict("provider transaction belongs to another order")
        if prior.status in (TxnStatus.PAID, TxnStatus.REFUNDING, TxnStatus.REFUNDED):
            return {"ok": True, "orderStatus": order.status.value}
        raise GatewayVerifyFailed(prior.failure_reason or "verification failed", ok=False, orderStatus=order.status.value)

    prior = _txn_by_provider_id(db, payload.get("providerTxnId"))
    if prior is not None:
        return _replay(prior)

    txn = None
    if payload.get("transactionId"):
        txn = db.get(PaymentTransaction, payload["transactionId"])
        if txn is not None and txn.order_id != order.id:
            raise Conflict("transaction belongs to another order")
    txn = txn or _latest_txn(db, order.id, TxnStatus.CREATED)
    if txn is None:
        raise NotFound(f"no gateway payment in progress for order {order.id}")
    if order.status != OrderStatus.PENDING_PAYMENT or txn.status != TxnStatus.CREATED:
        raise Conflict(f"order {order.id} is {order.status.value}", orderStatus=order.status.value)

    cfg = config_cache.get(db, order.theater_id, order.channel)
    result = gateway_for(cfg).verify_callback(payload, expected_order_id=txn.provider_order_id)

    prior = _txn_by_provider_id(db, result.provider_txn_id)
    if prior is not None:
        return _replay(prior)

    order = _settle_gateway(db, order, txn, result.ok, result.provider_txn_id, result.reason or "verification failed",
                            via="gateway_verify")
    if not result.ok:
        log.warning("gateway verify failed for order %s: %s", order.id, result.reason)
        raise GatewayVerifyFailed(result.reason or "verification failed", ok=False, orderStatus=order.status.value)
    log.info("order %s paid via %s txn=%s", order.id, cfg.provider.value, result.provider_txn_id)
    return {"ok": True, "orderStatus": order.status.value}


def razorpay_webhook(db: Session, raw_body: str, signature: str | None) -> dict:
    """Server-to-server Razorpay notification, checked against the channel's webhook secret.

    ``payment.captured`` settles the order PAID, ``payment.failed`` fails it.
    Events for payments this server never created are acknowledged and ignored.
    """
    if not signature:
        raise ValidationFailed("missing X-Razorpay-Signature header")
    try:
        event = json.loads(raw_body)
    except ValueError:
        raise ValidationFailed("webhook body is not JSON")
    kind = event.get("event")
    entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
    rp_order_id, payment_id = entity.get("order_id"), entity.get("id")

    txn = None
    if rp_order_id:
        txn = db.scalars(
            select(PaymentTransaction)
            .where(PaymentTransaction.provider == GatewayProvider.RAZORPAY,
                   PaymentTransaction.provider_order_id == rp_order_id)
            .order_by(PaymentTransaction.created_at.desc())
        ).first()
    txn = txn or _txn_by_provider_id(db, payment_id)
    if txn is None:
        log.info("razorpay webhook %s for unknown order %s acknowledged", kind, rp_order_id)
        return {"ok": True, "handled": False}

    order = store.get(db, txn.order_id)
    db.refresh(order)
    cfg = config_cache.get(db, order.theater_id, order.channel)
    gw = gateway_for(cfg)
    if not cfg.webhook_secret or not isinstance(gw, RazorpayGateway):
        raise ValidationFailed("razorpay webhooks are not configured for this channel")
    if not gw.verify_webhook(raw_body, signature, cfg.webhook_secret):
        log.warning("razorpay webhook with bad signature for order %s", order.id)
        raise ValidationFailed("invalid webhook signature")

    if kind == "payment.captured" and entity.get("status", "captured") == "captured":
        ok, failure = True, None
    elif kind == "payment.failed":
        ok, failure = False, entity.get("error_description") or "payment failed"
    else:
        return {"ok": True, "handled": False, "orderStatus": order.status.value}

    prior = _txn_by_provider_id(db, payment_id)
    if (order.status != OrderStatus.PENDING_PAYMENT or txn.status != TxnStatus.CREATED
            or (prior is not None and prior.id != txn.id)):
        # settled already, by the relayed callback or an earlier delivery
        return {"ok": True, "handled": False, "orderStatus": order.status.value}
    try:
        order = _settle_gateway(db, order, txn, ok, payment_id, failure, via="webhook")
    except Conflict:
        db.refresh(order)
        return {"ok": True, "handled": False, "orderStatus": order.status.value}
    log.info("razorpay webhook %s settled order %s as %s", kind, order.id, order.status.value)
    return {"ok": True, "handled": True, "orderStatus": order.status.value}


# --- reconciliation -------------------------------------------------------------

def reconcile_order(db: Session, order_id: str) -> dict:
    """Ask the provider about the order's open payment and apply a final answer."""
    order = store.get(db, order_id)
    db.refresh(order)
    txn = _latest_txn(db, order.id, TxnStatus.CREATED)
    if txn is None or order.status != OrderStatus.PENDING_PAYMENT:
        return {"orderId": order.id, "result": UP_TO_DATE, "orderStatus": order.status.value}

    cfg = config_cache.get(db, order.theater_id, order.channel)
    status = gateway_for(cfg).fetch_status(txn.provider_order_id, timeout=settings.GATEWAY_DEADLINE_SEC)
    if status.state == PENDING:
        return {"orderId": order.id, "result": UP_TO_DATE, "orderStatus": order.status.value}
    prior = _txn_by_provider_id(db, status.provider_txn_id)
    if prior is not None and prior.id != txn.id:
        raise Conflict("provider transaction belongs to another payment")

    order = _settle_gateway(db, order, txn, status.state == PAID, status.provider_txn_id, status.reason,
                            via="reconcile")
    log.info("reconciled order %s from %s: %s", order.id, cfg.provider.value, order.status.value)
    return {"orderId": order.id, "result": SYNCED, "orderStatus": order.status.value}


def reconcile_pending(db: Session, theater_id: str, limit: int = 100) -> dict:
    """Reconcile up to ``limit`` orders of a theater still waiting on their provider."""
    order_ids = db.scalars(
        select(Order.id)
        .where(Order.theater_id == theater_id, Order.status == OrderStatus.PENDING_PAYMENT)
        .order_by(Order.created_at)
        .limit(limit)
    ).all()
    db.commit()
    summary = {"total": len(order_ids), "synced": 0, "failed": 0, "alreadyUpToDate": 0, "errors": []}
    for order_id in order_ids:
        try:
            out = reconcile_order(db, order_id)
        except OrderError as e:
            db.rollback()
            summary["failed"] += 1
            summary["errors"].append({"orderId": order_id, "error": e.kind, "detail": e.message})
            continue
        if out["result"] == SYNCED:
            summary["synced"] += 1
        else:
            summary["alreadyUpToDate"] += 1
    log.info("reconciled theater %s: %s", theater_id, {k: v for k, v in summary.items() if k != "errors"})
    return summary


# --- staff operations -----------------------------------------------------------

def confirm(db: Session, order_id: str, actor: str) -> Order:
    """PENDING -> CONFIRMED: staff takes the order, payment collected at the counter."""
    try:
        order = store.transition(db, order_id, OrderStatus.PENDING, OrderStatus.CONFIRMED,
                                 actor=actor, reason="confirmed_by_staff")
        events.publish(db, order)
    except Exception:
        db.rollback()
        raise
    _finish(db)
    return order


def settle(db: Session, order_id: str, actor: str) -> Order:
    """CONFIRMED -> PAID in cash."""
    try:
        order = store.transition(
            db, order_id, OrderStatus.CONFIRMED, OrderStatus.PAID,
            {"payment_status": PaymentStatus.PAID, "payment_method": PayMethod.CASH, "paid_at": utcnow()},
            actor=actor, reason="cash",
        )
        ledger.commit(db, order_id)
        events.publish(db, order)
    except Exception:
        db.rollback()
        raise
    _finish(db)
    return order


def complete(db: Session, order_id: str, actor: str) -> Order:
    try:
        order = store.transition(db, order_id, OrderStatus.PAID, OrderStatus.COMPLETED,
                                 actor=actor, reason="completed")
        ledger.commit(db, order_id)
        events.publish(db, order)
    except Exception:
        db.rollback()
        raise
    _finish(db)
    return order


def _fail_open_txns(db: Session, order_id: str, reason: str):
    for txn in db.scalars(select(PaymentTransaction).where(
        PaymentTransaction.order_id == order_id, PaymentTransaction.status == TxnStatus.CREATED,
    )).all():
        txn.status = TxnStatus.FAILED
        txn.failure_reason = reason


def cancel(db: Session, order_id: str, actor: str, reason: str | None = None) -> Order:
    """Cancel an unpaid order (stock released) or a paid one (refunded, no restock)."""
    order = store.get(db, order_id)
    db.refresh(order)
    reason = reason or "cancelled_by_staff"
    current = order.status

    if current in OPEN_STATUSES:
        try:
            _fail_open_txns(db, order.id, reason)
            order = store.transition(db, order.id, current, OrderStatus.CANCELLED,
                                     {"payment_status": PaymentStatus.FAILED}, actor=actor, reason=reason)
            ledger.release(db, order.id)
            events.publish(db, order, reason=reason)
        except Exception:
            db.rollback()
            raise
        _finish(db)
        return order

    if current != OrderStatus.PAID:
        raise Conflict(f"order {order_id} is {current.value}", orderStatus=current.value)

    patch = {"payment_status": PaymentStatus.REFUNDED}
    txn = None
    if order.payment_method != PayMethod.CASH:
        txn = db.scalars(
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order.id,
                   PaymentTransaction.status.in_((TxnStatus.PAID, TxnStatus.REFUNDING)))
            .order_by(PaymentTransaction.created_at.desc())
        ).first()
    if txn is None:
        try:
            order = store.transition(db, order.id, OrderStatus.PAID, OrderStatus.CANCELLED, patch,
                                     actor=actor, reason=reason[:80])
            events.publish(db, order, reason=reason)
        except Exception:
            db.rollback()
            raise
        _finish(db)
        return order

    txn_id = txn.id
    _claim_refund(db, txn_id)
    cfg = config_cache.get(db, order.theater_id, order.channel)
    try:
        refund = gateway_for(cfg).refund(txn.provider_txn_id, txn.amount, timeout=settings.GATEWAY_DEADLINE_SEC)
    except Exception:
        _end_refund(db, txn_id, TxnStatus.PAID)
        raise
    if not refund.ok:
        # provider has no refund API; payment stays PAID until refunded by hand
        patch = {}
        reason = f"{reason}; refund_pending: {refund.reason}"
        log.warning("refund for order %s not issued: %s", order.id, refund.reason)
    settled = TxnStatus.REFUNDED if refund.ok else TxnStatus.PAID
    try:
        _end_refund(db, txn_id, settled, refund.refund_ref, commit=False)
        order = store.transition(db, order.id, OrderStatus.PAID, OrderStatus.CANCELLED, patch,
                                 actor=actor, reason=reason[:80])
        events.publish(db, order, reason=reason)
    except Exception:
        db.rollback()
        # record the provider outcome even though the order did not move
        _end_refund(db, txn_id, settled, refund.refund_ref)
        raise
    _finish(db)
    return order


def _claim_refund(db: Session, txn_id: str):
    """PAID -> REFUNDING, committed before the provider is called; one refund per payment."""
    res = db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == txn_id, PaymentTransaction.status == TxnStatus.PAID)
        .values(status=TxnStatus.REFUNDING)
    )
    if res.rowcount != 1:
        db.rollback()
        raise Conflict("a refund for this payment is already in progress or done")
    db.commit()


def _end_refund(db: Session, txn_id: str, status: TxnStatus, refund_ref: str | None = None, commit: bool = True):
    values = {"status": status}
    if refund_ref:
        values["refund_ref"] = refund_ref
    db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == txn_id, PaymentTransaction.status == TxnStatus.REFUNDING)
        .values(**values)
    )
    if commit:
        db.commit()


def expire_order(db: Session, order_id: str, actor: str = "sweeper") -> Order | None:
    """Cancel an order whose reservation outlived its TTL; repairs leftovers on settled orders."""
    order = db.get(Order, order_id)
    if order is None:
        # reservation with no order row behind it
        ledger.release(db, order_id)
        db.commit()
        log.warning("released orphan reservation for %s", order_id)
        return None
    db.refresh(order)
    try:
        if order.status in OPEN_STATUSES:
            _fail_open_txns(db, order.id, PAYMENT_TIMEOUT)
            order = store.transition(db, order.id, order.status, OrderStatus.CANCELLED,
                                     {"payment_status": PaymentStatus.FAILED},
                                     actor=actor, reason=PAYMENT_TIMEOUT)
            ledger.release(db, order.id)
            events.publish(db, order, reason=PAYMENT_TIMEOUT)
        elif order.status in store.REVENUE_STATUSES:
            ledger.commit(db, order.id)
        else:
            ledger.release(db, order.id)
    except Conflict:
        db.rollback()
        log.info("order %s moved while expiring, skipped", order_id)
        return None
    except Exception:
        db.rollback()
        raise
    _finish(db)
    return order


def accept_batch(db: Session, requests, actor: str | None = None) -> list[dict]:
    """Replay queued orders in the given order; one result per entry."""
    results = []
    for req in requests:
        try:
            res = accept_order(db, req, actor)
            results.append({"idempotencyKey": req.idempotency_key, "ok": True,
                            "replayed": res.replayed, **res.body})
        except OrderError as e:
            db.rollback()
            results.append({"idempotencyKey": req.idempotency_key, "ok": False,
                            "status": e.status_code, **e.to_dict()})
    return results
