"""
Fulfillment Orchestrator

Turns one paid order into a Shiprocket shipment:

    NOT_SHIPPED -> REGISTERED -> AWB_ASSIGNED
          \\            (any step before create) -> FAILED

1. Skip orders that already have a tracking number or are shipped
2. Build and validate the shipment request (no network yet)
3. Token, pickup pincode, create the Shiprocket order
4. Assign a courier (override or cheapest serviceable) and generate the AWB
5. Write shipment references back to the order
6. Notify the customer if an AWB was assigned

Once Shiprocket has created the order it cannot be rolled back from here, so
failures in steps 4-6 are logged and returned as warnings instead of
failing the call. The order keeps an "SR-" tracking reference until a
human or reconciler completes the booking.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import (
    AwbAssignmentFailedError,
    FulfillmentBaseError,
    NoServiceableCourierError,
    NotificationFailedError,
    OrderNotFoundError,
    OrderWriteFailedError,
    ShipmentCreateFailedError,
    ShiprocketAPIError,
)
from shiprocket_fulfillment.schemas.order import FULFILLED_STATUS, OrderSnapshot, ShippingUpdate
from shiprocket_fulfillment.services.notifications import ShipmentNotifier
from shiprocket_fulfillment.services.shipment_builder import ShipmentRequest, build_shipment_request
from shiprocket_fulfillment.services.shiprocket_client import (
    AwbAssignment,
    CourierOption,
    CreatedShipment,
    PickupLocation,
    ShiprocketClient,
)
from shiprocket_fulfillment.services.stores import OrderStore
from shiprocket_fulfillment.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

PENDING_AWB_PREFIX = "SR-"
PROCESSING_STATUS = "processing"


class FulfillmentState(str, Enum):
    NOT_SHIPPED = "not_shipped"
    REGISTERED = "registered"
    AWB_ASSIGNED = "awb_assigned"
    FAILED = "failed"


@dataclass
class FulfillmentResult:
    """Outcome of fulfilling one order."""
    order_id: str
    order_label: str
    state: FulfillmentState
    tracking_number: Optional[str] = None
    provider_order_id: Optional[str] = None
    provider_shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    skipped: bool = False
    warnings: List[FulfillmentBaseError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state != FulfillmentState.FAILED

    @property
    def message(self) -> str:
        if self.skipped:
            return f"Order {self.order_label} already shipped (tracking {self.tracking_number})"
        if self.awb_code:
            courier = f" via {self.courier_name}" if self.courier_name else ""
            return f"Shipment created for order {self.order_label}{courier}. AWB: {self.awb_code}"
        return (
            f"Order {self.order_label} registered with Shiprocket "
            f"(shipment {self.provider_shipment_id or self.provider_order_id}), awaiting courier assignment"
        )


def is_pending_awb_reference(tracking_number: Optional[str]) -> bool:
    """True for "SR-" references (registered, no waybill yet)."""
    return bool(tracking_number) and tracking_number.startswith(PENDING_AWB_PREFIX)


def build_tracking_url(tracking_number: Optional[str], base_url: Optional[str] = None) -> Optional[str]:
    """Public tracking link, or None when there is no real AWB yet."""
    if not tracking_number or is_pending_awb_reference(tracking_number):
        return None
    return f"{(base_url or settings.SHIPROCKET_TRACKING_URL).rstrip('/')}/{tracking_number}"


def select_cheapest_courier(options: Sequence[CourierOption]) -> Optional[CourierOption]:
    """Lowest rate wins; ties keep Shiprocket's order (sorted() is stable)."""
    if not options:
        return None
    return sorted(options, key=lambda option: option.rate)[0]


def match_pickup_location(locations: Sequence[PickupLocation], name: str) -> Optional[PickupLocation]:
    """Exact name, then case-insensitive name, then the first location."""
    if not locations:
        return None
    for location in locations:
        if location.name == name:
            return location
    lowered = (name or "").lower()
    for location in locations:
        if location.name.lower() == lowered:
            return location
    return locations[0]


class FulfillmentOrchestrator:
    """
    Fulfills single orders against Shiprocket.

    Usage:
        orchestrator = FulfillmentOrchestrator(client, token_cache, order_store, notifier)
        result = await orchestrator.fulfill_order(order_id)
    """

    def __init__(
        self,
        client: ShiprocketClient,
        token_cache: TokenCache,
        order_store: OrderStore,
        notifier: Optional[ShipmentNotifier] = None,
        pickup_location_name: Optional[str] = None,
        default_pickup_pincode: Optional[str] = None,
    ):
        self.client = client
        self.token_cache = token_cache
        self.order_store = order_store
        self.notifier = notifier
        self.pickup_location_name = pickup_location_name or settings.SHIPROCKET_PICKUP_LOCATION
        self.default_pickup_pincode = default_pickup_pincode or settings.SHIPROCKET_PICKUP_PINCODE

    async def _load_order(self, order_id: str) -> OrderSnapshot:
        order = await self.order_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    async def resolve_pickup_pincode(self, token: str) -> str:
        """Pincode of the configured pickup location, or the default pincode."""
        try:
            locations = await self.client.get_pickup_locations(token)
        except ShiprocketAPIError as e:
            logger.warning(f"Pickup location lookup failed ({e.message}), using default pincode {self.default_pickup_pincode}")
            return self.default_pickup_pincode

        location = match_pickup_location(locations, self.pickup_location_name)
        if location and location.pin_code:
            if location.name != self.pickup_location_name:
                logger.warning(
                    f"Pickup location '{self.pickup_location_name}' not found exactly, using '{location.name}'"
                )
            return location.pin_code

        logger.warning(f"No Shiprocket pickup locations configured, using default pincode {self.default_pickup_pincode}")
        return self.default_pickup_pincode

    async def get_courier_quotes(self, order_id: str) -> List[CourierOption]:
        """
        Serviceable couriers for an order, cheapest first.

        Read-only: nothing is created on Shiprocket and the order is not
        touched. Rates are fetched fresh on every call.
        """
        order = await self._load_order(order_id)
        request = build_shipment_request(order, self.pickup_location_name)
        token = await self.token_cache.get_valid_token()
        pickup_pincode = await self.resolve_pickup_pincode(token)

        options = await self.client.check_serviceability(
            token, pickup_pincode, request.delivery_pincode, request.weight, cod=request.is_cod
        )
        return sorted(options, key=lambda option: option.rate)

    async def _assign_courier(
        self,
        token: str,
        created: CreatedShipment,
        request: ShipmentRequest,
        pickup_pincode: str,
        courier_company_id: Optional[int],
    ) -> AwbAssignment:
        if not created.provider_shipment_id:
            raise AwbAssignmentFailedError(
                "Shiprocket returned no shipment id, cannot assign a courier",
                details={"provider_order_id": created.provider_order_id},
            )

        if courier_company_id is None:
            try:
                options = await self.client.check_serviceability(
                    token, pickup_pincode, request.delivery_pincode, request.weight, cod=request.is_cod
                )
            except ShiprocketAPIError as e:
                raise AwbAssignmentFailedError(
                    f"Serviceability check failed: {e.message}",
                    details={"provider_shipment_id": created.provider_shipment_id},
                )

            cheapest = select_cheapest_courier(options)
            if cheapest is None:
                raise NoServiceableCourierError(
                    f"No courier services {pickup_pincode} -> {request.delivery_pincode}",
                    details={"pickup_pincode": pickup_pincode, "delivery_pincode": request.delivery_pincode},
                )
            courier_company_id = cheapest.courier_company_id
            logger.info(f"Selected courier {cheapest.courier_name} ({courier_company_id}) at rate {cheapest.rate}")
        else:
            logger.info(f"Using courier override {courier_company_id}")

        try:
            assignment = await self.client.assign_courier_and_generate_awb(
                token, created.provider_shipment_id, courier_company_id
            )
        except ShiprocketAPIError as e:
            raise AwbAssignmentFailedError(
                f"AWB assignment failed: {e.message}",
                details={"provider_shipment_id": created.provider_shipment_id, "courier_company_id": courier_company_id},
            )
        return assignment

    async def fulfill_order(self, order_id: str, courier_company_id: Optional[int] = None) -> FulfillmentResult:
        """
        Create the Shiprocket shipment for an order.

        Args:
            order_id: Local order id
            courier_company_id: Assign this courier without a serviceability check

        Returns:
            FulfillmentResult; state REGISTERED means created without an AWB

        Raises:
            OrderNotFoundError, ShipmentValidationError subclasses,
            ShiprocketAuthError subclasses, ShipmentCreateFailedError
        """
        order = await self._load_order(order_id)

        if order.is_fulfilled:
            logger.info(f"Order {order.label} already shipped or has tracking, skipping")
            return FulfillmentResult(
                order_id=order.id,
                order_label=order.label,
                state=FulfillmentState.REGISTERED if is_pending_awb_reference(order.tracking_number) else FulfillmentState.AWB_ASSIGNED,
                tracking_number=order.tracking_number,
                provider_order_id=order.provider_order_id,
                provider_shipment_id=order.provider_shipment_id,
                skipped=True,
            )

        # Validation happens before any network call
        request = build_shipment_request(order, self.pickup_location_name)

        token = await self.token_cache.get_valid_token()
        pickup_pincode = await self.resolve_pickup_pincode(token)

        try:
            created = await self.client.create_shipment(token, request)
        except ShiprocketAPIError as e:
            logger.error(f"Shiprocket order creation failed for {order.label}: {e.message}")
            raise ShipmentCreateFailedError(
                f"Shiprocket order creation failed: {e.message}",
                details={"order_id": order.id, "provider_code": e.code},
            )

        result = FulfillmentResult(
            order_id=order.id,
            order_label=order.label,
            state=FulfillmentState.REGISTERED,
            provider_order_id=created.provider_order_id,
            provider_shipment_id=created.provider_shipment_id,
            awb_code=created.awb_code,
            courier_name=created.courier_name,
        )

        if not result.awb_code:
            try:
                assignment = await self._assign_courier(token, created, request, pickup_pincode, courier_company_id)
                result.awb_code = assignment.awb_code
                result.courier_name = assignment.courier_name or result.courier_name
            except (NoServiceableCourierError, AwbAssignmentFailedError) as e:
                logger.warning(f"Order {order.label} registered without AWB: {e.message}")
                result.warnings.append(e)
            except Exception as e:
                # The Shiprocket order exists, so the write-back below must still run
                logger.error(f"Order {order.label} courier assignment failed unexpectedly: {e}")
                result.warnings.append(AwbAssignmentFailedError(
                    f"AWB assignment failed: {e}",
                    details={"provider_shipment_id": created.provider_shipment_id},
                ))

        if result.awb_code:
            result.state = FulfillmentState.AWB_ASSIGNED
            result.tracking_number = result.awb_code
            status = FULFILLED_STATUS
        else:
            result.tracking_number = f"{PENDING_AWB_PREFIX}{result.provider_shipment_id or result.provider_order_id}"
            status = PROCESSING_STATUS

        update = ShippingUpdate(
            status=status,
            tracking_number=result.tracking_number,
            provider_order_id=result.provider_order_id,
            provider_shipment_id=result.provider_shipment_id,
            awb_code=result.awb_code,
            courier_name=result.courier_name,
        )
        try:
            await self.order_store.update_order_shipping(order.id, update)
        except Exception as e:
            # The Shiprocket order exists; leave it for manual reconciliation
            logger.error(
                f"Order {order.label} write-back failed after Shiprocket created "
                f"shipment {result.provider_shipment_id}: {e}"
            )
            result.warnings.append(OrderWriteFailedError(
                f"Order update failed: {e}",
                details={"order_id": order.id, "tracking_number": result.tracking_number},
            ))

        if result.state == FulfillmentState.AWB_ASSIGNED:
            await self._notify(order, update, result)

        logger.info(result.message)
        return result

    async def _notify(self, order: OrderSnapshot, update: ShippingUpdate, result: FulfillmentResult) -> None:
        if self.notifier is None:
            return

        shipped = order.model_copy(update={
            "status": update.status,
            "tracking_number": update.tracking_number,
            "provider_order_id": update.provider_order_id,
            "provider_shipment_id": update.provider_shipment_id,
            "shipping_method": update.courier_name or order.shipping_method,
        })
        try:
            sent = await self.notifier.send_shipped(shipped)
            error = None if sent else "notifier reported failure"
        except Exception as e:
            error = str(e)

        if error:
            logger.error(f"Failed to send shipped notification for order {order.label}: {error}")
            result.warnings.append(NotificationFailedError(
                f"Shipped notification failed: {error}",
                details={"order_id": order.id},
            ))
