# Importing the module registers tables with Base for create_all()
from .core import (  # noqa: F401
    # Enums
    OrderStatus, PaymentStatus, PayMethod, OrderType, Channel, GstType,
    GatewayProvider, ReservationState, TxnStatus, PrintJobKind,

    # Identity
    Theater, User,

    # Catalog & inventory
    Category, Product, ProductStock, StockReservation,

    # Orders
    Order, OrderItem, OrderCounter,

    # Payments
    PaymentGatewayConfig, PaymentTransaction,

    # Audit, events, locks
    AuditLog, OrderEvent, SubscriberCheckpoint, SweepLock,

    # Printing
    PrintJob,
)

__all__ = [
    "OrderStatus", "PaymentStatus", "PayMethod", "OrderType", "Channel", "GstType",
    "GatewayProvider", "ReservationState", "TxnStatus", "PrintJobKind",
    "Theater", "User",
    "Category", "Product", "ProductStock", "StockReservation",
    "Order", "OrderItem", "OrderCounter",
    "PaymentGatewayConfig", "PaymentTransaction",
    "AuditLog", "OrderEvent", "SubscriberCheckpoint", "SweepLock",
    "PrintJob",
]

all_models = True
