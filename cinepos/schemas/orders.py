from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class _Wire(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(populate_by_name=True)


class OrderItemIn(_Wire):
    product_id: str = Field(alias="productId", min_length=1)
    quantity: int = Field(ge=1)
    special_instructions: Optional[str] = Field(default=None, alias="specialInstructions", max_length=500)


class OrderCreate(_Wire):
    theater_id: str = Field(alias="theaterId", min_length=1)
    items: list[OrderItemIn] = Field(min_length=1)
    customer_name: str = Field(alias="customerName", min_length=1, max_length=160)
    payment_method: str = Field(alias="paymentMethod")
    source: str
    qr_name: Optional[str] = Field(default=None, alias="qrName", max_length=80)
    seat: Optional[str] = Field(default=None, max_length=40)
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=80)
    client_total: Optional[float] = Field(default=None, alias="clientTotal", ge=0)


class OrderBatch(_Wire):
    orders: list[OrderCreate] = Field(min_length=1, max_length=100)


class CancelIn(_Wire):
    reason: Optional[str] = Field(default=None, max_length=80)


class GatewayCreateIn(_Wire):
    order_id: str = Field(alias="orderId")
    payment_method: str = Field(alias="paymentMethod")


class GatewayVerifyIn(_Wire):
    """Relayed provider callback. Provider-specific fields ride along untouched."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_id: str = Field(alias="orderId")
    provider_txn_id: Optional[str] = Field(default=None, alias="providerTxnId")
    signature: Optional[str] = None
    provider_order_id: Optional[str] = Field(default=None, alias="providerOrderId")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
