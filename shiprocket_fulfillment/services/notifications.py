"""
Shipment Notification Hooks

Defines the interface the fulfillment flow uses to tell a customer their
order has shipped. The actual email provider lives outside this package.
"""

import logging
from typing import Optional, Protocol

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.schemas.order import OrderSnapshot

logger = logging.getLogger(__name__)


class ShipmentNotifier(Protocol):
    """Protocol for shipped-order notifiers."""

    async def send_shipped(self, order: OrderSnapshot) -> bool:
        """Notify the customer that the order shipped. Returns False on failure."""
        ...


class LoggingShipmentNotifier:
    """Notifier for development/testing - logs instead of sending email."""

    def __init__(self, tracking_url_base: Optional[str] = None):
        self.tracking_url_base = tracking_url_base or settings.SHIPROCKET_TRACKING_URL

    async def send_shipped(self, order: OrderSnapshot) -> bool:
        logger.info(
            f"[MOCK EMAIL] Order shipped\n"
            f"  Order: {order.label}\n"
            f"  To: {order.shipping_address.email or order.email}\n"
            f"  Courier: {order.shipping_method or 'Standard Shipping'}\n"
            f"  Tracking: {self.tracking_url_base}/{order.tracking_number}"
        )
        return True


class NullShipmentNotifier:
    """Used when SHIPMENT_NOTIFICATIONS_ENABLED is off."""

    async def send_shipped(self, order: OrderSnapshot) -> bool:
        logger.debug(f"Shipment notifications disabled, not notifying for order {order.label}")
        return True


def get_default_notifier() -> ShipmentNotifier:
    if settings.SHIPMENT_NOTIFICATIONS_ENABLED:
        return LoggingShipmentNotifier()
    return NullShipmentNotifier()
