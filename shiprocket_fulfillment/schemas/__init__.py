from shiprocket_fulfillment.schemas.order import (
    AddressSnapshot,
    OrderItemSnapshot,
    OrderSnapshot,
    ShippingUpdate,
)
