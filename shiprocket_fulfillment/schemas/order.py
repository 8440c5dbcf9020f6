"""
Order schemas

Snapshots of the external order record as the fulfillment flow sees it.
Checkout has written addresses under several key spellings over time
(zip / postalCode / postal_code, address / streetAddress), so the address
schema accepts all of them and exposes one name per field.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

FULFILLED_STATUS = "shipped"
BATCH_ELIGIBLE_STATUSES = ("pending", "processing")


class AddressSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    first_name: str = Field("", validation_alias=AliasChoices("first_name", "firstName", "name"))
    last_name: str = Field("", validation_alias=AliasChoices("last_name", "lastName"))
    street: str = Field("", validation_alias=AliasChoices("street", "address", "streetAddress", "address_line1"))
    apartment: str = Field("", validation_alias=AliasChoices("apartment", "address_line2", "address2"))
    city: str = ""
    state: str = ""
    postal_code: str = Field("", validation_alias=AliasChoices("postal_code", "postalCode", "zip", "zip_code", "pincode"))
    country: str = "India"
    phone: str = ""
    email: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def coerce_text(cls, v):
        if v is None:
            return ""
        if isinstance(v, (int, float)):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("country")
    @classmethod
    def default_country(cls, v):
        return v or "India"


class OrderItemSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    product_id: Optional[str] = None
    name: str = ""
    sku: Optional[str] = None
    quantity: int = 1
    price: float = 0.0
    weight: Optional[float] = None  # kg per unit

    @field_validator("id", "product_id", "sku", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("name", mode="before")
    @classmethod
    def coerce_name(cls, v):
        return v or ""

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, v):
        return 1 if v is None else v

    @field_validator("price", mode="before")
    @classmethod
    def default_price(cls, v):
        return 0.0 if v is None or v == "" else v


class OrderSnapshot(BaseModel):
    """Read-only view of an order for fulfillment."""
    model_config = ConfigDict(extra="ignore")

    id: str
    order_number: Optional[str] = None
    status: str = "pending"
    email: Optional[str] = None
    payment_method: Optional[str] = None
    subtotal: Optional[float] = None
    total_amount: Optional[float] = None
    created_at: Optional[datetime] = None
    shipping_address: AddressSnapshot = Field(default_factory=AddressSnapshot)
    billing_address: Optional[AddressSnapshot] = None
    items: List[OrderItemSnapshot] = Field(default_factory=list)
    tracking_number: Optional[str] = None
    provider_order_id: Optional[str] = None
    provider_shipment_id: Optional[str] = None
    shipping_method: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if v is not None else v

    @field_validator("tracking_number", "provider_order_id", "provider_shipment_id", "email", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("shipping_address", mode="before")
    @classmethod
    def default_address(cls, v):
        return v or {}

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return (v or "pending").lower()

    @property
    def label(self) -> str:
        """Human-facing order reference (order number when set)."""
        return self.order_number or self.id

    @property
    def unit_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def is_fulfilled(self) -> bool:
        return bool(self.tracking_number) or self.status == FULFILLED_STATUS

    @property
    def is_batch_eligible(self) -> bool:
        return self.status in BATCH_ELIGIBLE_STATUSES and not self.tracking_number


class ShippingUpdate(BaseModel):
    """Fields written back to the order after a shipment is registered."""
    status: str
    tracking_number: str
    provider_order_id: Optional[str] = None
    provider_shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
