"""
Shipping Service for Shiprocket fulfillment

High-level entry point for the rest of the application:
- Single-order and batch fulfillment
- Courier quotes for manual selection
- Tracking, labels, manifests, invoices
- Cancellation and pickup requests
- Shipment details, dimension corrections and charges
- Return orders

Wires the SQL stores, token cache, client and orchestrator for one
database session.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import OrderNotFoundError, ShipmentValidationError
from shiprocket_fulfillment.core.pacing import PacedSequencer
from shiprocket_fulfillment.services.batch_fulfillment import BatchFulfillmentDriver, BatchResult, ProgressCallback
from shiprocket_fulfillment.services.fulfillment import (
    FulfillmentOrchestrator,
    FulfillmentResult,
    is_pending_awb_reference,
)
from shiprocket_fulfillment.services.notifications import ShipmentNotifier, get_default_notifier
from shiprocket_fulfillment.services.shipment_builder import build_return_request
from shiprocket_fulfillment.services.shiprocket_client import (
    CourierOption,
    ReturnOrder,
    ShipmentCharges,
    ShipmentDocument,
    ShiprocketClient,
    TrackingResult,
)
from shiprocket_fulfillment.services.stores import SqlOrderStore, SqlSettingsStore
from shiprocket_fulfillment.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

_batch_pacer: Optional[PacedSequencer] = None


def get_batch_pacer() -> PacedSequencer:
    """Process-wide pacer so overlapping batches still run one order at a time."""
    global _batch_pacer
    if _batch_pacer is None:
        _batch_pacer = PacedSequencer(settings.BATCH_FULFILLMENT_PACING_MS / 1000)
    return _batch_pacer


class ShippingService:
    """
    Central service for Shiprocket shipping operations.
    """

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[ShiprocketClient] = None,
        notifier: Optional[ShipmentNotifier] = None,
        seller_config: Any = None,
    ):
        self.db = db
        self.client = client or ShiprocketClient()
        self.order_store = SqlOrderStore(db)
        self.token_cache = TokenCache(self.client, SqlSettingsStore(db), seller_config=seller_config)
        self.orchestrator = FulfillmentOrchestrator(
            client=self.client,
            token_cache=self.token_cache,
            order_store=self.order_store,
            notifier=notifier or get_default_notifier(),
        )
        self.batch_driver = BatchFulfillmentDriver(self.orchestrator, self.order_store, pacer=get_batch_pacer())

    async def close(self):
        """Clean up resources."""
        await self.client.close()

    # ==================== Fulfillment ====================

    async def fulfill_order(self, order_id: str, courier_company_id: Optional[int] = None) -> FulfillmentResult:
        return await self.orchestrator.fulfill_order(order_id, courier_company_id=courier_company_id)

    async def fulfill_batch(
        self,
        order_ids: Sequence[str],
        courier_override: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        return await self.batch_driver.run_batch(order_ids, courier_override=courier_override, on_progress=on_progress)

    async def get_courier_quotes(self, order_id: str) -> List[CourierOption]:
        return await self.orchestrator.get_courier_quotes(order_id)

    # ==================== Tracking ====================

    async def get_tracking(self, order_id: str) -> TrackingResult:
        """
        Track an order's shipment.

        Uses the AWB when one is assigned, otherwise the Shiprocket shipment id.
        """
        order = await self.order_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})

        token = await self.token_cache.get_valid_token()
        if order.tracking_number and not is_pending_awb_reference(order.tracking_number):
            return await self.client.track_by_awb(token, order.tracking_number)
        if order.provider_shipment_id:
            return await self.client.track_by_shipment_id(token, order.provider_shipment_id)

        raise ShipmentValidationError(
            f"Order {order.label} has no Shiprocket shipment yet",
            code="NOT_REGISTERED",
            details={"order_id": order.id},
        )

    # ==================== Documents ====================

    async def generate_label(self, shipment_ids: Sequence[str]) -> ShipmentDocument:
        token = await self.token_cache.get_valid_token()
        return await self.client.generate_label(token, shipment_ids)

    async def generate_manifest(self, shipment_ids: Sequence[str]) -> ShipmentDocument:
        token = await self.token_cache.get_valid_token()
        return await self.client.generate_manifest(token, shipment_ids)

    async def generate_invoice(self, shipment_ids: Sequence[str]) -> ShipmentDocument:
        token = await self.token_cache.get_valid_token()
        return await self.client.generate_invoice(token, shipment_ids)

    # ==================== Shipment Management ====================

    async def cancel_shipment(self, awb_code: str) -> Dict:
        token = await self.token_cache.get_valid_token()
        return await self.client.cancel_shipment(token, awb_code)

    async def request_pickup(
        self,
        pickup_date: str,
        pickup_time: str,
        expected_package_count: int,
        pickup_location_id: int,
        shipment_ids: Optional[Sequence[int]] = None,
    ) -> Dict:
        token = await self.token_cache.get_valid_token()
        return await self.client.request_pickup(
            token,
            pickup_date=pickup_date,
            pickup_time=pickup_time,
            expected_package_count=expected_package_count,
            pickup_location_id=pickup_location_id,
            shipment_ids=shipment_ids,
        )

    async def get_shipment_details(self, provider_order_id: str) -> Dict:
        token = await self.token_cache.get_valid_token()
        return await self.client.get_shipment_details(token, provider_order_id)

    async def update_shipment_dimensions(
        self,
        shipment_id: str,
        weight: Optional[float] = None,
        length: Optional[float] = None,
        breadth: Optional[float] = None,
        height: Optional[float] = None,
    ) -> Dict:
        """Replace the estimated package weight/size once the parcel is measured."""
        token = await self.token_cache.get_valid_token()
        return await self.client.update_shipment_dimensions(
            token, shipment_id, weight=weight, length=length, breadth=breadth, height=height
        )

    async def get_shipment_charges(self, shipment_id: str) -> ShipmentCharges:
        token = await self.token_cache.get_valid_token()
        return await self.client.get_shipment_charges(token, shipment_id)

    # ==================== Returns ====================

    async def create_return_order(self, order_id: str, channel_id: Optional[int] = None) -> ReturnOrder:
        """
        Book a reverse pickup for a shipped order.

        The local order is not modified.
        """
        order = await self.order_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        if not order.is_fulfilled:
            raise ShipmentValidationError(
                f"Order {order.label} has not shipped, nothing to return",
                code="NOT_SHIPPED",
                details={"order_id": order.id, "status": order.status},
            )

        request = build_return_request(order, channel_id=channel_id)
        token = await self.token_cache.get_valid_token()
        return await self.client.create_return_order(token, request)


async def get_shipping_service(db: AsyncSession) -> ShippingService:
    """Factory for ShippingService."""
    return ShippingService(db)
