from sqlalchemy import (
    String, ForeignKey, Boolean, Numeric, Enum, Text, DateTime, Date, Integer, BigInteger, JSON,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from enum import Enum as PyEnum
from datetime import datetime, date
from cinepos.db import Base
from cinepos.models.common import IdMixin, TSMMixin, utcnow

# ── Enums ───────────────────────────────────────────────────────────────────
class OrderStatus(PyEnum):
    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

class PaymentStatus(PyEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class PayMethod(PyEnum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"

class OrderType(PyEnum):
    POS = "pos"
    ONLINE = "online"

class Channel(PyEnum):
    KIOSK = "kiosk"
    ONLINE = "online"

class GstType(PyEnum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"

class GatewayProvider(PyEnum):
    NONE = "none"
    RAZORPAY = "razorpay"
    PAYTM = "paytm"
    PHONEPE = "phonepe"

class ReservationState(PyEnum):
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"

class TxnStatus(PyEnum):
    CREATED = "CREATED"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDING = "REFUNDING"      # refund claimed, provider call in flight
    REFUNDED = "REFUNDED"

class PrintJobKind(PyEnum):
    GST_BILL = "gst_bill"
    CATEGORY_DOCKET = "category_docket"

# ── Identity ────────────────────────────────────────────────────────────────
class Theater(Base, IdMixin, TSMMixin):
    __tablename__ = "theater"
    name: Mapped[str] = mapped_column(String(160))
    gstin: Mapped[str | None] = mapped_column(String(32))
    address: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(String(20))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    receipt_footer: Mapped[str | None] = mapped_column(String(200), default="Thank you! Enjoy the show.")

class User(Base, IdMixin, TSMMixin):
    __tablename__ = "user"
    theater_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("theater.id"))  # None = super admin
    name: Mapped[str] = mapped_column(String(160))
    mobile: Mapped[str] = mapped_column(String(20), unique=True)
    pass_hash: Mapped[str] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(30), default="STAFF")  # SUPER_ADMIN | THEATER_ADMIN | STAFF | KIOSK
    active: Mapped[bool] = mapped_column(Boolean, default=True)

# ── Catalog ─────────────────────────────────────────────────────────────────
class Category(Base, IdMixin, TSMMixin):
    __tablename__ = "category"
    theater_id: Mapped[str] = mapped_column(String(36), ForeignKey("theater.id"))
    name: Mapped[str] = mapped_column(String(120))
    position: Mapped[int] = mapped_column(default=0)

class Product(Base, IdMixin, TSMMixin):
    __tablename__ = "product"
    theater_id: Mapped[str] = mapped_column(String(36), ForeignKey("theater.id"), index=True)
    category_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("category.id"))
    name: Mapped[str] = mapped_column(String(160))
    image_url: Mapped[str | None] = mapped_column(String(400))
    base_price: Mapped[int] = mapped_column(BigInteger)            # paise
    offer_price: Mapped[int | None] = mapped_column(BigInteger)    # paise, combo/offer override
    tax_rate: Mapped[float] = mapped_column(Numeric(5, 2), default=5.00)
    gst_type: Mapped[GstType] = mapped_column(Enum(GstType), default=GstType.EXCLUDE)
    discount_percentage: Mapped[float] = mapped_column(Numeric(5, 2), default=0)
    size_label: Mapped[str | None] = mapped_column(String(60))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    min_stock: Mapped[int | None] = mapped_column(Integer)        # low-stock threshold, None = settings default

    category: Mapped[Category | None] = relationship(lazy="joined")

# ── Inventory ledger ────────────────────────────────────────────────────────
class ProductStock(Base, TSMMixin):
    __tablename__ = "product_stock"
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("product.id"), primary_key=True)
    theater_id: Mapped[str] = mapped_column(String(36), index=True)
    initial: Mapped[int] = mapped_column(Integer, default=0)
    available: Mapped[int] = mapped_column(Integer, default=0)
    reserved: Mapped[int] = mapped_column(Integer, default=0)
    committed: Mapped[int] = mapped_column(Integer, default=0)
    restocked: Mapped[int] = mapped_column(Integer, default=0)
    low_stock_alerted: Mapped[bool] = mapped_column(Boolean, default=False)

class StockReservation(Base, IdMixin, TSMMixin):
    __tablename__ = "stock_reservation"
    order_id: Mapped[str] = mapped_column(String(36), index=True)
    theater_id: Mapped[str] = mapped_column(String(36))
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("product.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    state: Mapped[ReservationState] = mapped_column(Enum(ReservationState), default=ReservationState.ACTIVE)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_reservation_order_product"),
        Index("ix_reservation_state_expiry", "state", "expires_at"),
    )

# ── Orders ──────────────────────────────────────────────────────────────────
class Order(Base, IdMixin, TSMMixin):
    __tablename__ = "order"
    theater_id: Mapped[str] = mapped_column(String(36), ForeignKey("theater.id"))
    order_number: Mapped[str] = mapped_column(String(40))
    business_date: Mapped[date] = mapped_column(Date)
    idempotency_key: Mapped[str] = mapped_column(String(80))
    source: Mapped[str] = mapped_column(String(20))             # persisted verbatim
    order_type: Mapped[OrderType] = mapped_column(Enum(OrderType))
    channel: Mapped[Channel] = mapped_column(Enum(Channel))
    customer_name: Mapped[str] = mapped_column(String(160))
    qr_name: Mapped[str | None] = mapped_column(String(80))
    seat: Mapped[str | None] = mapped_column(String(40))
    created_by_user_id: Mapped[str | None] = mapped_column(String(36))

    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus), default=OrderStatus.PENDING)
    status_reason: Mapped[str | None] = mapped_column(String(80))
    payment_status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), default=PaymentStatus.PENDING)
    payment_method: Mapped[PayMethod] = mapped_column(Enum(PayMethod))
    payment_provider: Mapped[GatewayProvider] = mapped_column(Enum(GatewayProvider), default=GatewayProvider.NONE)
    gateway_ref: Mapped[str | None] = mapped_column(String(120))   # provider transaction id
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # pricing snapshot, paise
    gross: Mapped[int] = mapped_column(BigInteger, default=0)
    subtotal: Mapped[int] = mapped_column(BigInteger, default=0)
    cgst: Mapped[int] = mapped_column(BigInteger, default=0)
    sgst: Mapped[int] = mapped_column(BigInteger, default=0)
    tax: Mapped[int] = mapped_column(BigInteger, default=0)
    total_discount: Mapped[int] = mapped_column(BigInteger, default=0)
    total: Mapped[int] = mapped_column(BigInteger, default=0)
    client_total: Mapped[int | None] = mapped_column(BigInteger)

    items: Mapped[list["OrderItem"]] = relationship(
        order_by="OrderItem.position", lazy="selectin", cascade="all, delete-orphan",
    )
    __table_args__ = (
        UniqueConstraint("theater_id", "idempotency_key", name="uq_order_idempotency"),
        UniqueConstraint("theater_id", "order_number", name="uq_order_number"),
        Index("ix_order_theater_created", "theater_id", "created_at"),
    )

class OrderItem(Base, IdMixin):
    __tablename__ = "order_item"
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("order.id"), index=True)
    position: Mapped[int] = mapped_column(Integer)
    product_id: Mapped[str] = mapped_column(String(36))
    name: Mapped[str] = mapped_column(String(160))
    category: Mapped[str | None] = mapped_column(String(120))
    image_url: Mapped[str | None] = mapped_column(String(400))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[int] = mapped_column(BigInteger)
    tax_rate: Mapped[float] = mapped_column(Numeric(5, 2))
    gst_type: Mapped[GstType] = mapped_column(Enum(GstType))
    discount_percentage: Mapped[float] = mapped_column(Numeric(5, 2), default=0)
    size_label: Mapped[str | None] = mapped_column(String(60))
    special_instructions: Mapped[str | None] = mapped_column(Text)
    line_subtotal: Mapped[int] = mapped_column(BigInteger, default=0)
    line_tax: Mapped[int] = mapped_column(BigInteger, default=0)
    line_discount: Mapped[int] = mapped_column(BigInteger, default=0)
    line_total: Mapped[int] = mapped_column(BigInteger, default=0)

class OrderCounter(Base):
    __tablename__ = "order_counter"
    theater_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_date: Mapped[date] = mapped_column(Date, primary_key=True)
    last_no: Mapped[int] = mapped_column(Integer, default=0)

# ── Payments ────────────────────────────────────────────────────────────────
class PaymentGatewayConfig(Base, IdMixin, TSMMixin):
    __tablename__ = "payment_gateway_config"
    theater_id: Mapped[str] = mapped_column(String(36), ForeignKey("theater.id"))
    channel: Mapped[Channel] = mapped_column(Enum(Channel))
    provider: Mapped[GatewayProvider] = mapped_column(Enum(GatewayProvider), default=GatewayProvider.NONE)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    accepted_methods: Mapped[dict] = mapped_column(JSON, default=dict)   # {"cash": true, "card": false, ...}
    key_id: Mapped[str | None] = mapped_column(String(120))              # razorpay key id / merchant id
    key_secret: Mapped[str | None] = mapped_column(String(200))          # razorpay secret / merchant key / salt key
    salt_index: Mapped[str | None] = mapped_column(String(10))           # phonepe
    webhook_secret: Mapped[str | None] = mapped_column(String(200))      # razorpay webhook signing secret
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    __table_args__ = (
        UniqueConstraint("theater_id", "channel", name="uq_gateway_theater_channel"),
    )

class PaymentTransaction(Base, IdMixin, TSMMixin):
    __tablename__ = "payment_transaction"
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("order.id"), index=True)
    theater_id: Mapped[str] = mapped_column(String(36))
    provider: Mapped[GatewayProvider] = mapped_column(Enum(GatewayProvider))
    method: Mapped[PayMethod] = mapped_column(Enum(PayMethod))
    provider_order_id: Mapped[str] = mapped_column(String(120), index=True)
    provider_txn_id: Mapped[str | None] = mapped_column(String(120), unique=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    status: Mapped[TxnStatus] = mapped_column(Enum(TxnStatus), default=TxnStatus.CREATED)
    provider_params: Mapped[dict] = mapped_column(JSON, default=dict)
    refund_ref: Mapped[str | None] = mapped_column(String(120))
    failure_reason: Mapped[str | None] = mapped_column(String(200))

# ── Audit ───────────────────────────────────────────────────────────────────
class AuditLog(Base, IdMixin, TSMMixin):
    __tablename__ = "audit_log"
    actor_user_id: Mapped[str] = mapped_column(String(36))   # user id or "system"/"gateway"/"sweeper"
    entity: Mapped[str] = mapped_column(String(60))
    entity_id: Mapped[str] = mapped_column(String(36), index=True)
    action: Mapped[str] = mapped_column(String(60))
    reason: Mapped[str | None] = mapped_column(Text)
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)

# ── Events (outbox) ─────────────────────────────────────────────────────────
class OrderEvent(Base):
    __tablename__ = "order_event"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    theater_id: Mapped[str] = mapped_column(String(36), index=True)
    order_id: Mapped[str] = mapped_column(String(36))
    order_version: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(30))  # order.created | order.updated | stock.low
    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class SubscriberCheckpoint(Base, TSMMixin):
    __tablename__ = "subscriber_checkpoint"
    subscriber: Mapped[str] = mapped_column(String(60), primary_key=True)
    last_seq: Mapped[int] = mapped_column(default=0)

class SweepLock(Base):
    __tablename__ = "sweep_lock"
    name: Mapped[str] = mapped_column(String(80), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(80))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

# ── Printing ────────────────────────────────────────────────────────────────
class PrintJob(Base, IdMixin, TSMMixin):
    __tablename__ = "print_job"
    theater_id: Mapped[str] = mapped_column(String(36), index=True)
    order_id: Mapped[str] = mapped_column(String(36))
    kind: Mapped[PrintJobKind] = mapped_column(Enum(PrintJobKind))
    category: Mapped[str] = mapped_column(String(120), default="")  # "" for the aggregated bill
    bill: Mapped[dict] = mapped_column(JSON)
    printed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    __table_args__ = (
        UniqueConstraint("order_id", "kind", "category", name="uq_print_job_key"),
    )
