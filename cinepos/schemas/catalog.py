from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TheaterIn(_Wire):
    name: str = Field(min_length=1, max_length=160)
    gstin: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    receipt_footer: Optional[str] = Field(default=None, alias="receiptFooter")


class CategoryIn(_Wire):
    theater_id: str = Field(alias="theaterId")
    name: str = Field(min_length=1, max_length=120)
    position: int = 0


class ProductIn(_Wire):
    theater_id: str = Field(alias="theaterId")
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    name: str = Field(min_length=1, max_length=160)
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    base_price: float = Field(alias="basePrice", ge=0)           # rupees
    offer_price: Optional[float] = Field(default=None, alias="offerPrice", ge=0)
    tax_rate: float = Field(default=5.0, alias="taxRate", ge=0, le=100)
    gst_type: Literal["INCLUDE", "EXCLUDE"] = Field(default="EXCLUDE", alias="gstType")
    discount_percentage: float = Field(default=0.0, alias="discountPercentage", ge=0, le=100)
    size_label: Optional[str] = Field(default=None, alias="size")
    is_active: bool = Field(default=True, alias="isActive")
    initial_stock: int = Field(default=0, alias="initialStock", ge=0)
    min_stock: Optional[int] = Field(default=None, alias="minStock", ge=0)


class ProductPatch(_Wire):
    name: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    base_price: Optional[float] = Field(default=None, alias="basePrice", ge=0)
    offer_price: Optional[float] = Field(default=None, alias="offerPrice", ge=0)
    tax_rate: Optional[float] = Field(default=None, alias="taxRate", ge=0, le=100)
    discount_percentage: Optional[float] = Field(default=None, alias="discountPercentage", ge=0, le=100)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    min_stock: Optional[int] = Field(default=None, alias="minStock", ge=0)


class RestockIn(_Wire):
    quantity: int = Field(ge=1)


class GatewayConfigIn(_Wire):
    provider: Literal["none", "razorpay", "paytm", "phonepe"] = "none"
    enabled: bool = False
    accepted_methods: dict[str, bool] = Field(default_factory=lambda: {"cash": True}, alias="acceptedMethods")
    key_id: Optional[str] = Field(default=None, alias="keyId")
    key_secret: Optional[str] = Field(default=None, alias="keySecret")
    salt_index: Optional[str] = Field(default=None, alias="saltIndex")
    webhook_secret: Optional[str] = Field(default=None, alias="webhookSecret")
    test_mode: bool = Field(default=False, alias="testMode")
