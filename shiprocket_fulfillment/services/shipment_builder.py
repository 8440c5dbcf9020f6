"""
Shipment Request Builder

Pure transformation of an order snapshot into a Shiprocket adhoc order
request. No I/O: every validation error here is raised before any network
call is made.

Package weight and dimensions are estimated, not measured:
- weight: sum of item weights (0.5 kg per unit when unknown), 0.5 kg floor
- dimensions: a base box grown by 5 cm per 3 units, capped at 60x40x30
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shiprocket_fulfillment.core.exceptions import (
    EmptyOrderError,
    IncompleteAddressError,
    MissingCustomerEmailError,
)
from shiprocket_fulfillment.schemas.order import AddressSnapshot, OrderSnapshot

logger = logging.getLogger(__name__)

DEFAULT_ITEM_WEIGHT_KG = 0.5
MIN_PACKAGE_WEIGHT_KG = 0.5

BASE_LENGTH_CM, MAX_LENGTH_CM = 20, 60
BASE_BREADTH_CM, MAX_BREADTH_CM = 15, 40
BASE_HEIGHT_CM, MAX_HEIGHT_CM = 10, 30

REQUIRED_ADDRESS_FIELDS = ("street", "city", "state", "postal_code")

PAYMENT_PREPAID = "Prepaid"
PAYMENT_COD = "COD"

# Appended to the local order id for return orders
RETURN_ORDER_SUFFIX = "-R"


@dataclass
class ShipmentItem:
    name: str
    sku: str
    units: int
    selling_price: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sku": self.sku,
            "units": self.units,
            "selling_price": self.selling_price,
        }


@dataclass
class ShipmentRequest:
    """Shiprocket adhoc order request. Built per call, never persisted."""
    order_id: str
    order_date: str
    pickup_location: str
    billing_customer_name: str
    billing_last_name: str
    billing_address: str
    billing_address_2: str
    billing_city: str
    billing_pincode: str
    billing_state: str
    billing_country: str
    billing_email: str
    billing_phone: str
    payment_method: str
    sub_total: float
    weight: float
    length: int
    breadth: int
    height: int
    items: List[ShipmentItem] = field(default_factory=list)
    shipping_is_billing: bool = True

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PAYMENT_COD

    @property
    def delivery_pincode(self) -> str:
        return self.billing_pincode

    def to_payload(self) -> Dict[str, Any]:
        """Render the JSON body for orders/create/adhoc."""
        return {
            "order_id": self.order_id,
            "order_date": self.order_date,
            "pickup_location": self.pickup_location,
            "billing_customer_name": self.billing_customer_name,
            "billing_last_name": self.billing_last_name,
            "billing_address": self.billing_address,
            "billing_address_2": self.billing_address_2,
            "billing_city": self.billing_city,
            "billing_pincode": self.billing_pincode,
            "billing_state": self.billing_state,
            "billing_country": self.billing_country,
            "billing_email": self.billing_email,
            "billing_phone": self.billing_phone,
            "shipping_is_billing": self.shipping_is_billing,
            "order_items": [item.to_payload() for item in self.items],
            "payment_method": self.payment_method,
            "sub_total": self.sub_total,
            "length": self.length,
            "breadth": self.breadth,
            "height": self.height,
            "weight": self.weight,
        }


@dataclass
class ReturnRequest:
    """Shiprocket return order: the customer address is the pickup point."""
    order_id: str
    order_date: str
    pickup_customer_name: str
    pickup_last_name: str
    pickup_address: str
    pickup_address_2: str
    pickup_city: str
    pickup_state: str
    pickup_pincode: str
    pickup_country: str
    pickup_email: str
    pickup_phone: str
    sub_total: float
    weight: float
    length: int
    breadth: int
    height: int
    items: List[ShipmentItem] = field(default_factory=list)
    channel_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Render the JSON body for orders/create/return."""
        payload = {
            "order_id": self.order_id,
            "order_date": self.order_date,
            "pickup_customer_name": self.pickup_customer_name,
            "pickup_last_name": self.pickup_last_name,
            "pickup_address": self.pickup_address,
            "pickup_address_2": self.pickup_address_2,
            "pickup_city": self.pickup_city,
            "pickup_state": self.pickup_state,
            "pickup_pincode": self.pickup_pincode,
            "pickup_country": self.pickup_country,
            "pickup_email": self.pickup_email,
            "pickup_phone": self.pickup_phone,
            "order_items": [item.to_payload() for item in self.items],
            "sub_total": self.sub_total,
            "length": self.length,
            "breadth": self.breadth,
            "height": self.height,
            "weight": self.weight,
        }
        if self.channel_id is not None:
            payload["channel_id"] = self.channel_id
        return payload


def estimate_weight(order: OrderSnapshot) -> float:
    """Total package weight in kg."""
    total = sum(
        (item.weight if item.weight is not None else DEFAULT_ITEM_WEIGHT_KG) * item.quantity
        for item in order.items
    )
    if total <= 0:
        return MIN_PACKAGE_WEIGHT_KG
    return round(total, 3)


def estimate_dimensions(item_count: int) -> Dict[str, int]:
    """
    Box size in cm for the given number of units.

    Packaging heuristic: 20x15x10 base, +5 cm length (+2 breadth/height)
    for every 3 units.
    """
    extra = (item_count // 3) * 5
    return {
        "length": min(BASE_LENGTH_CM + extra, MAX_LENGTH_CM),
        "breadth": min(BASE_BREADTH_CM + extra // 2, MAX_BREADTH_CM),
        "height": min(BASE_HEIGHT_CM + extra // 2, MAX_HEIGHT_CM),
    }


def normalize_phone(phone: Optional[str]) -> str:
    """Keep the last 10 digits (strips +91 / leading 0)."""
    digits = re.sub(r"\D", "", phone or "")
    return digits[-10:]


def resolve_customer_email(order: OrderSnapshot) -> str:
    """Shipping address email, then order email, then billing address email."""
    candidates = [
        order.shipping_address.email,
        order.email,
        order.billing_address.email if order.billing_address else None,
    ]
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()

    raise MissingCustomerEmailError(
        f"Order {order.label} has no customer email; Shiprocket requires one for delivery notifications",
        details={"order_id": order.id},
    )


def validate_address(order: OrderSnapshot) -> AddressSnapshot:
    address = order.shipping_address
    missing = [name for name in REQUIRED_ADDRESS_FIELDS if not getattr(address, name)]
    if missing:
        raise IncompleteAddressError(
            f"Shipping address for order {order.label} is missing: {', '.join(missing)}",
            missing_fields=missing,
            details={"order_id": order.id},
        )
    return address


def _order_date(created_at: Optional[datetime]) -> str:
    return (created_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d")


def _shipment_items(order: OrderSnapshot) -> List[ShipmentItem]:
    return [
        ShipmentItem(
            name=item.name or "Product",
            sku=item.sku or item.product_id or "SKU-UNKNOWN",
            units=item.quantity,
            selling_price=item.price,
        )
        for item in order.items
    ]


def build_shipment_request(order: OrderSnapshot, pickup_location_name: str) -> ShipmentRequest:
    """
    Build the Shiprocket request for an order.

    Raises:
        EmptyOrderError: order has no line items
        IncompleteAddressError: street/city/state/postal code missing
        MissingCustomerEmailError: no email on address, order or billing
    """
    if not order.items:
        raise EmptyOrderError(f"Order {order.label} has no items", details={"order_id": order.id})

    address = validate_address(order)
    email = resolve_customer_email(order)

    items = _shipment_items(order)

    dimensions = estimate_dimensions(order.unit_count)
    request = ShipmentRequest(
        order_id=order.id,
        order_date=_order_date(order.created_at),
        pickup_location=pickup_location_name,
        billing_customer_name=address.first_name or "Customer",
        billing_last_name=address.last_name,
        billing_address=address.street,
        billing_address_2=address.apartment,
        billing_city=address.city,
        billing_pincode=address.postal_code,
        billing_state=address.state,
        billing_country=address.country or "India",
        billing_email=email,
        billing_phone=normalize_phone(address.phone),
        payment_method=PAYMENT_COD if (order.payment_method or "").lower() == "cod" else PAYMENT_PREPAID,
        sub_total=order.subtotal or order.total_amount or 0,
        weight=estimate_weight(order),
        items=items,
        **dimensions,
    )

    logger.debug(
        f"Built shipment request for order {order.label}: {len(items)} lines, "
        f"{request.weight}kg, {request.length}x{request.breadth}x{request.height}cm"
    )
    return request


def build_return_request(
    order: OrderSnapshot,
    return_order_id: Optional[str] = None,
    channel_id: Optional[int] = None,
) -> ReturnRequest:
    """
    Build a return (reverse pickup) request for a shipped order.

    The order's shipping address is where the courier collects the parcel.
    Same validation as a forward shipment.
    """
    if not order.items:
        raise EmptyOrderError(f"Order {order.label} has no items", details={"order_id": order.id})

    address = validate_address(order)
    email = resolve_customer_email(order)
    dimensions = estimate_dimensions(order.unit_count)

    return ReturnRequest(
        order_id=return_order_id or f"{order.id}{RETURN_ORDER_SUFFIX}",
        order_date=_order_date(None),
        pickup_customer_name=address.first_name or "Customer",
        pickup_last_name=address.last_name,
        pickup_address=address.street,
        pickup_address_2=address.apartment,
        pickup_city=address.city,
        pickup_state=address.state,
        pickup_pincode=address.postal_code,
        pickup_country=address.country or "India",
        pickup_email=email,
        pickup_phone=normalize_phone(address.phone),
        sub_total=order.subtotal or order.total_amount or 0,
        weight=estimate_weight(order),
        items=_shipment_items(order),
        channel_id=channel_id,
        **dimensions,
    )
