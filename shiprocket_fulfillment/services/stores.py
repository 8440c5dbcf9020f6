"""
Order and settings stores

The fulfillment flow only depends on the two protocols below. The SQL
implementations back them with the storefront database; tests use in-memory
fakes.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shiprocket_fulfillment.models.order import Order
from shiprocket_fulfillment.models.store_settings import StoreSetting
from shiprocket_fulfillment.schemas.order import FULFILLED_STATUS, OrderSnapshot, ShippingUpdate

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        ...

    async def update_order_shipping(self, order_id: str, update: ShippingUpdate) -> None:
        ...


class SettingsStore(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def upsert(self, key: str, value: Dict[str, Any]) -> None:
        ...


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SqlOrderStore:
    """OrderStore over the storefront orders / order_items tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, order_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == str(order_id))
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_snapshot(order: Order) -> OrderSnapshot:
        return OrderSnapshot.model_validate({
            "id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "email": order.email,
            "payment_method": order.payment_method,
            "subtotal": float(order.subtotal) if order.subtotal is not None else None,
            "total_amount": float(order.total_amount) if order.total_amount is not None else None,
            "created_at": order.created_at,
            "shipping_address": order.shipping_address or {},
            "billing_address": order.billing_address,
            "tracking_number": order.tracking_number,
            "provider_order_id": order.shiprocket_order_id,
            "provider_shipment_id": order.shiprocket_shipment_id,
            "shipping_method": order.shipping_method,
            "items": [
                {
                    "id": item.id,
                    "product_id": item.product_id,
                    "name": item.name,
                    "sku": item.sku,
                    "quantity": item.quantity,
                    "price": float(item.price) if item.price is not None else 0.0,
                    "weight": item.weight,
                }
                for item in order.items
            ],
        })

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        order = await self._load(order_id)
        if order is None:
            return None
        return self._to_snapshot(order)

    async def update_order_shipping(self, order_id: str, update: ShippingUpdate) -> None:
        """
        Write shipment references back to the order.

        Notes record that the shipment was created automatically, with the
        courier and AWB when known.
        """
        order = await self._load(order_id)
        if order is None:
            raise LookupError(f"Order {order_id} not found")

        now = datetime.now(timezone.utc)
        order.status = update.status
        order.tracking_number = update.tracking_number
        order.shiprocket_order_id = _to_int(update.provider_order_id)
        order.shiprocket_shipment_id = _to_int(update.provider_shipment_id)
        if update.courier_name:
            order.shipping_method = update.courier_name
        if update.status == FULFILLED_STATUS:
            order.shipped_at = now
        order.notes = json.dumps({
            "automated": True,
            "shiprocket_order_id": update.provider_order_id,
            "shiprocket_shipment_id": update.provider_shipment_id,
            "courier": update.courier_name,
            "awb": update.awb_code,
        })
        order.updated_at = now

        try:
            await self.db.commit()
        except Exception:
            # The session is shared with the token cache and later orders.
            await self.db.rollback()
            raise
        logger.info(f"Order {order_id} updated: status={update.status} tracking={update.tracking_number}")


class SqlSettingsStore:
    """SettingsStore over the store_settings key/value table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(select(StoreSetting).where(StoreSetting.key == key))
        setting = result.scalar_one_or_none()
        if setting is None or not setting.value:
            return None
        return dict(setting.value)

    async def upsert(self, key: str, value: Dict[str, Any]) -> None:
        result = await self.db.execute(select(StoreSetting).where(StoreSetting.key == key))
        setting = result.scalar_one_or_none()

        if setting:
            setting.value = value
        else:
            self.db.add(StoreSetting(key=key, value=value))

        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
