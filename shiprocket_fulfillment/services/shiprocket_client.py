"""
Shiprocket API Client

Request/response wrappers for the Shiprocket external API:
- Authentication (email/password -> bearer token)
- Order creation (adhoc)
- Courier serviceability and AWB assignment
- Pickup locations and pickup requests
- Label / manifest / invoice generation
- Cancellation, listing and tracking
- Return orders and shipment charges

The client holds no token state: every authenticated call takes the bearer
token explicitly, and the token cache owns its lifecycle. No call is retried
here. Order creation is not idempotent on Shiprocket's side, so retry policy
belongs to the caller.

Shiprocket returns the same field in different places depending on the
endpoint and account (order_id at the top level or under payload, awb_code
under response.data or data). Every public method returns a normalized
dataclass so callers never branch on raw response shape.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import ShiprocketAPIError
from shiprocket_fulfillment.services.shipment_builder import ReturnRequest, ShipmentRequest

logger = logging.getLogger(__name__)

# API endpoints (relative to settings.SHIPROCKET_API_BASE)
AUTH_PATH = "/auth/login"
CREATE_ORDER_PATH = "/orders/create/adhoc"
RETURN_ORDER_PATH = "/orders/create/return"
SERVICEABILITY_PATH = "/courier/serviceability/"
ASSIGN_AWB_PATH = "/courier/assign/awb"
PICKUP_LOCATIONS_PATH = "/settings/company/pickup"
PICKUP_REQUEST_PATH = "/courier/generate/pickup"
LABEL_PATH = "/courier/generate/label"
MANIFEST_PATH = "/manifests/generate"
INVOICE_PATH = "/orders/print/invoice"
CANCEL_AWB_PATH = "/orders/cancel/shipment/awbs"
ORDERS_PATH = "/orders"
ORDER_DETAILS_PATH = "/orders/show"
UPDATE_SHIPMENT_PATH = "/orders/update/shipment"
COURIER_LIST_PATH = "/courier/courierList"
TRACK_SHIPMENT_PATH = "/courier/track/shipment"
TRACK_AWB_PATH = "/courier/track/awb"

# Body-level status values Shiprocket uses for success
SUCCESS_BODY_STATUSES = (None, 1, 200)


@dataclass
class CourierOption:
    """Courier quote from a serviceability check."""
    courier_company_id: int
    courier_name: str
    rate: float
    estimated_delivery_days: Optional[str] = None
    cod_available: bool = False
    raw: Dict = field(default_factory=dict)


@dataclass
class CreatedShipment:
    """Result of registering an order with Shiprocket."""
    provider_order_id: Optional[str]
    provider_shipment_id: Optional[str]
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    raw: Dict = field(default_factory=dict)


@dataclass
class ReturnOrder:
    """Return order registered with Shiprocket."""
    provider_order_id: Optional[str]
    provider_shipment_id: Optional[str]
    status: Optional[str] = None
    raw: Dict = field(default_factory=dict)


@dataclass
class ShipmentCharges:
    """Freight and COD charges billed for a shipment."""
    shipment_id: str
    freight_charges: Optional[float] = None
    cod_charges: Optional[float] = None
    total_charges: Optional[float] = None
    applied_weight: Optional[float] = None
    raw: Dict = field(default_factory=dict)


@dataclass
class AwbAssignment:
    """Courier assignment with its generated waybill."""
    awb_code: str
    courier_name: Optional[str] = None
    courier_company_id: Optional[int] = None
    raw: Dict = field(default_factory=dict)


@dataclass
class PickupLocation:
    """Pickup address configured on the Shiprocket account."""
    name: str
    pin_code: str
    id: Optional[int] = None
    city: Optional[str] = None
    state: Optional[str] = None
    is_primary: bool = False


@dataclass
class ShipmentDocument:
    """Generated label, manifest or invoice."""
    url: str
    raw: Dict = field(default_factory=dict)


@dataclass
class ShipmentListing:
    """One page of Shiprocket orders."""
    records: List[Dict] = field(default_factory=list)
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    total: Optional[int] = None


@dataclass
class TrackingEvent:
    """Tracking activity from Shiprocket."""
    date: Optional[str]
    status: str
    activity: str = ""
    location: Optional[str] = None


@dataclass
class TrackingResult:
    """Normalized tracking data."""
    awb_code: Optional[str]
    courier_name: Optional[str]
    current_status: Optional[str]
    shipment_status: Optional[int] = None
    track_url: Optional[str] = None
    events: List[TrackingEvent] = field(default_factory=list)
    raw: Any = None


def flatten_errors(errors: Any) -> str:
    """Flatten a Shiprocket `errors` value into one line."""
    if not errors:
        return ""
    if isinstance(errors, dict):
        parts = []
        for key, value in errors.items():
            if isinstance(value, (list, tuple)):
                parts.append(f"{key}: {', '.join(str(v) for v in value)}")
            else:
                parts.append(f"{key}: {value}")
        return "; ".join(parts)
    if isinstance(errors, (list, tuple)):
        return ", ".join(str(e) for e in errors)
    return str(errors)


def extract_error_message(data: Any, status_code: Optional[int] = None) -> str:
    """Build the error message from a Shiprocket error body."""
    fallback = f"Shiprocket API error (Status: {status_code})" if status_code else "Shiprocket API error"
    if not isinstance(data, dict):
        return fallback

    message = data.get("message") or data.get("error") or fallback
    details = flatten_errors(data.get("errors"))
    if details:
        message = f"{message}: {details}"
    return str(message)


def _first_present(sources: Sequence[Any], key: str) -> Any:
    for source in sources:
        if isinstance(source, dict) and source.get(key) not in (None, ""):
            return source[key]
    return None


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _find_tracking_data(body: Any) -> Optional[Dict]:
    """Locate tracking_data in AWB-style or shipment-keyed responses."""
    if isinstance(body, dict):
        if isinstance(body.get("tracking_data"), dict):
            return body["tracking_data"]
        candidates = body.values()
    elif isinstance(body, list):
        candidates = body
    else:
        return None

    for value in candidates:
        found = _find_tracking_data(value)
        if found:
            return found
    return None


class ShiprocketClient:
    """
    Shiprocket API client.

    Usage:
        async with ShiprocketClient() as client:
            token = await client.authenticate(email, password)
            couriers = await client.check_serviceability(token, "400001", "110001", 1.5)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.SHIPROCKET_API_BASE).rstrip("/")
        self.timeout = timeout or settings.SHIPROCKET_HTTP_TIMEOUT_SECONDS
        self._http_client = http_client

    async def __aenter__(self):
        await self._get_http_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Optional[Any] = None,
        params: Optional[Dict] = None,
    ) -> Any:
        """Send a request and return the parsed JSON body."""
        client = await self._get_http_client()
        url = f"{self.base_url}{path}"

        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.RequestError as e:
            logger.error(f"Shiprocket {method} {path} request failed: {e}")
            raise ShiprocketAPIError(
                message=f"Network error: could not connect to Shiprocket ({e})",
                code="NETWORK_ERROR",
            )

        logger.debug(f"Shiprocket API {method} {path} -> {response.status_code}")

        data: Any = {}
        if response.content:
            try:
                data = response.json()
            except ValueError:
                if response.is_success:
                    raise ShiprocketAPIError(
                        message=f"Invalid response from Shiprocket: {response.text[:200]}",
                        code="INVALID_RESPONSE",
                        status_code=response.status_code,
                    )
                data = {"message": response.text[:500] or response.reason_phrase}

        if response.status_code >= 400:
            message = extract_error_message(data, response.status_code)
            code = str(response.status_code)
            if response.status_code == 401:
                message = f"Authentication failed, token may be expired: {message}"
                code = "UNAUTHORIZED"
            logger.error(f"Shiprocket API error on {path}: {code} - {message}")
            raise ShiprocketAPIError(
                message=message,
                code=code,
                status_code=response.status_code,
                details={"response": data},
            )

        return data

    # ==================== Authentication ====================

    async def authenticate(self, email: str, password: str) -> str:
        """
        Exchange email/password for a bearer token.

        Returns:
            The token string (valid for ~24h on Shiprocket's side)
        """
        if not email or not password:
            raise ShiprocketAPIError(
                message="Shiprocket requires email and password for authentication",
                code="AUTH_FAILED",
            )

        data = await self._request("POST", AUTH_PATH, json={"email": email, "password": password})
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ShiprocketAPIError(
                message="No token received from Shiprocket",
                code="AUTH_FAILED",
                details={"response": data},
            )

        logger.info("Shiprocket authentication succeeded")
        return token

    # ==================== Orders ====================

    async def create_shipment(self, token: str, request: ShipmentRequest) -> CreatedShipment:
        """
        Register an order with Shiprocket (adhoc order).

        Some accounts assign a courier on creation, in which case awb_code
        is already set on the result.
        """
        payload = request.to_payload()
        data = await self._request("POST", CREATE_ORDER_PATH, token=token, json=payload)
        if not isinstance(data, dict):
            raise ShiprocketAPIError("Unexpected create order response", code="INVALID_RESPONSE")

        if data.get("status") == 0 or data.get("status_code") == 0:
            raise ShiprocketAPIError(
                message=extract_error_message(data),
                code="CREATE_REJECTED",
                details={"response": data},
            )

        sources = [data, data.get("payload")]
        provider_order_id = _as_str(_first_present(sources, "order_id") or data.get("sr_order_id"))
        provider_shipment_id = _as_str(_first_present(sources, "shipment_id"))

        if not provider_order_id and not provider_shipment_id:
            raise ShiprocketAPIError(
                message=extract_error_message(data) if data.get("message") else "Shiprocket returned no order or shipment id",
                code="INVALID_RESPONSE",
                details={"response": data},
            )

        result = CreatedShipment(
            provider_order_id=provider_order_id,
            provider_shipment_id=provider_shipment_id,
            awb_code=_as_str(_first_present(sources, "awb_code")),
            courier_name=_as_str(_first_present(sources, "courier_name")),
            raw=data,
        )
        logger.info(
            f"Shiprocket order created: order_id={result.provider_order_id} "
            f"shipment_id={result.provider_shipment_id} awb={result.awb_code}"
        )
        return result

    async def create_return_order(self, token: str, request: ReturnRequest) -> ReturnOrder:
        """Register a return (reverse pickup from the customer)."""
        data = await self._request("POST", RETURN_ORDER_PATH, token=token, json=request.to_payload())
        if not isinstance(data, dict):
            raise ShiprocketAPIError("Unexpected return order response", code="INVALID_RESPONSE")

        sources = [data, data.get("payload")]
        result = ReturnOrder(
            provider_order_id=_as_str(_first_present(sources, "order_id")),
            provider_shipment_id=_as_str(_first_present(sources, "shipment_id")),
            status=_as_str(_first_present(sources, "status")),
            raw=data,
        )
        if not result.provider_order_id and not result.provider_shipment_id:
            raise ShiprocketAPIError(
                message=extract_error_message(data) if data.get("message") else "Shiprocket returned no return order id",
                code="INVALID_RESPONSE",
                details={"response": data},
            )

        logger.info(
            f"Shiprocket return order created for {request.order_id}: "
            f"order_id={result.provider_order_id} shipment_id={result.provider_shipment_id}"
        )
        return result

    async def list_shipments(
        self,
        token: str,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
        status: Optional[str] = None,
        channel_id: Optional[int] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> ShipmentListing:
        """List Shiprocket orders with optional filters."""
        filters = {
            "page": page,
            "per_page": per_page,
            "status": status,
            "channel_id": channel_id,
            "start_date": start_date,
            "end_date": end_date,
        }
        params = {k: str(v) for k, v in filters.items() if v}

        data = await self._request("GET", ORDERS_PATH, token=token, params=params)
        records = data.get("data", []) if isinstance(data, dict) else []
        pagination = (data.get("meta") or {}).get("pagination") or {} if isinstance(data, dict) else {}

        return ShipmentListing(
            records=records if isinstance(records, list) else [],
            current_page=pagination.get("current_page"),
            total_pages=pagination.get("total_pages"),
            total=pagination.get("total"),
        )

    async def get_shipment_details(self, token: str, order_id: str) -> Dict:
        """Fetch a single Shiprocket order."""
        data = await self._request("GET", f"{ORDER_DETAILS_PATH}/{order_id}", token=token)
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            return data["data"]
        return data

    async def update_shipment_dimensions(
        self,
        token: str,
        shipment_id: str,
        weight: Optional[float] = None,
        length: Optional[float] = None,
        breadth: Optional[float] = None,
        height: Optional[float] = None,
    ) -> Dict:
        """Correct package weight/dimensions before a courier is assigned."""
        body = {"weight": weight, "length": length, "breadth": breadth, "height": height}
        return await self._request(
            "POST",
            f"{UPDATE_SHIPMENT_PATH}/{shipment_id}",
            token=token,
            json={k: v for k, v in body.items() if v is not None},
        )

    async def get_shipment_charges(self, token: str, shipment_id: str) -> ShipmentCharges:
        data = await self._request("GET", f"{ORDER_DETAILS_PATH}/{shipment_id}/charges", token=token)
        body = data.get("data") if isinstance(data, dict) and isinstance(data.get("data"), dict) else data
        if not isinstance(body, dict):
            body = {}

        sources = [body, data if isinstance(data, dict) else None]
        return ShipmentCharges(
            shipment_id=str(shipment_id),
            freight_charges=_as_float(_first_present(sources, "freight_charges")),
            cod_charges=_as_float(_first_present(sources, "cod_charges")),
            total_charges=_as_float(_first_present(sources, "total_charges") or _first_present(sources, "charges")),
            applied_weight=_as_float(_first_present(sources, "applied_weight") or _first_present(sources, "charged_weight")),
            raw=data if isinstance(data, dict) else {"data": data},
        )

    async def cancel_shipment(self, token: str, awb_code: str) -> Dict:
        """Cancel a shipment by AWB."""
        if not awb_code:
            raise ValueError("awb_code is required to cancel a shipment")
        data = await self._request("POST", f"{CANCEL_AWB_PATH}/{awb_code}", token=token)
        logger.info(f"Shiprocket shipment {awb_code} cancelled")
        return data

    # ==================== Couriers ====================

    async def check_serviceability(
        self,
        token: str,
        pickup_postcode: str,
        delivery_postcode: str,
        weight: float,
        cod: bool = False,
    ) -> List[CourierOption]:
        """
        Get couriers that can deliver between two pincodes.

        Returns:
            CourierOption list in Shiprocket's original order
        """
        if not pickup_postcode or not delivery_postcode or not weight:
            raise ValueError("pickup_postcode, delivery_postcode, and weight are required")

        params = {
            "pickup_postcode": str(pickup_postcode),
            "delivery_postcode": str(delivery_postcode),
            "weight": str(weight),
            "cod": "1" if cod else "0",
        }
        data = await self._request("GET", SERVICEABILITY_PATH, token=token, params=params)

        if not isinstance(data, dict) or data.get("status") not in SUCCESS_BODY_STATUSES:
            raise ShiprocketAPIError(
                message=extract_error_message(data) if isinstance(data, dict) else "Invalid response from Shiprocket API",
                code="SERVICEABILITY_FAILED",
                details={"response": data},
            )

        companies = (data.get("data") or {}).get("available_courier_companies") or []
        options = []
        for company in companies:
            try:
                options.append(CourierOption(
                    courier_company_id=int(company["courier_company_id"]),
                    courier_name=company.get("courier_name", ""),
                    rate=float(company.get("rate") or 0),
                    estimated_delivery_days=_as_str(company.get("estimated_delivery_days")),
                    cod_available=bool(company.get("cod")),
                    raw=company,
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed courier entry: {e}")

        logger.info(
            f"Serviceability {pickup_postcode} -> {delivery_postcode} ({weight}kg, cod={cod}): "
            f"{len(options)} couriers"
        )
        return options

    async def assign_courier_and_generate_awb(
        self,
        token: str,
        shipment_id: str,
        courier_company_id: int,
    ) -> AwbAssignment:
        """
        Assign a courier to a shipment and generate its AWB.

        Raises:
            ShiprocketAPIError: if the call fails or no AWB was assigned
        """
        data = await self._request(
            "POST",
            ASSIGN_AWB_PATH,
            token=token,
            json={"shipment_id": int(shipment_id), "courier_id": int(courier_company_id)},
        )

        response = data.get("response") if isinstance(data, dict) else None
        sources = [
            response.get("data") if isinstance(response, dict) else None,
            data.get("data") if isinstance(data, dict) else None,
            data,
        ]
        awb_code = _as_str(_first_present(sources, "awb_code"))
        if not awb_code:
            raise ShiprocketAPIError(
                message=extract_error_message(data) if isinstance(data, dict) and data.get("message") else "AWB was not assigned",
                code="AWB_NOT_ASSIGNED",
                details={"response": data},
            )

        company_id = _first_present(sources, "courier_company_id")
        return AwbAssignment(
            awb_code=awb_code,
            courier_name=_as_str(_first_present(sources, "courier_name")),
            courier_company_id=int(company_id) if company_id else int(courier_company_id),
            raw=data,
        )

    async def get_courier_companies(self, token: str) -> List[Dict]:
        """List all courier companies on the account."""
        data = await self._request("GET", COURIER_LIST_PATH, token=token)
        if isinstance(data, dict):
            companies = data.get("courier_data") or data.get("data") or []
            return companies if isinstance(companies, list) else []
        return data if isinstance(data, list) else []

    # ==================== Pickup ====================

    async def get_pickup_locations(self, token: str) -> List[PickupLocation]:
        """Get pickup addresses configured on the account."""
        data = await self._request("GET", PICKUP_LOCATIONS_PATH, token=token)
        addresses = ((data.get("data") or {}).get("shipping_address") or []) if isinstance(data, dict) else []

        locations = []
        for entry in addresses:
            locations.append(PickupLocation(
                name=entry.get("pickup_location", ""),
                pin_code=str(entry.get("pin_code") or ""),
                id=entry.get("id"),
                city=entry.get("city"),
                state=entry.get("state"),
                is_primary=bool(entry.get("is_primary_location")),
            ))
        return locations

    async def request_pickup(
        self,
        token: str,
        pickup_date: str,
        pickup_time: str,
        expected_package_count: int,
        pickup_location_id: int,
        shipment_ids: Optional[Sequence[int]] = None,
    ) -> Dict:
        """
        Schedule a courier pickup.

        Args:
            pickup_date: YYYY-MM-DD
            pickup_time: HH:MM
            expected_package_count: Number of packages (> 0)
            pickup_location_id: Shiprocket pickup location id (> 0)
            shipment_ids: Optional shipments to attach to the pickup
        """
        pickup_date = str(pickup_date or "").strip()
        pickup_time = str(pickup_time or "").strip()
        if not pickup_date or not pickup_time or not expected_package_count or int(expected_package_count) <= 0:
            raise ValueError("pickup_date, pickup_time, and expected_package_count are required")
        if not pickup_location_id or int(pickup_location_id) <= 0:
            raise ValueError("pickup_location_id must be a valid positive integer")

        body: Dict[str, Any] = {
            "pickup_date": pickup_date,
            "pickup_time": pickup_time,
            "expected_package_count": int(expected_package_count),
            "pickup_location_id": int(pickup_location_id),
        }
        valid_ids = [int(s) for s in (shipment_ids or []) if str(s).isdigit() and int(s) > 0]
        if valid_ids:
            body["shipment_id"] = valid_ids

        return await self._request("POST", PICKUP_REQUEST_PATH, token=token, json=body)

    # ==================== Documents ====================

    async def _generate_document(self, token: str, path: str, url_key: str, shipment_ids: Sequence[str]) -> ShipmentDocument:
        if not shipment_ids:
            raise ValueError("At least one shipment id is required")

        data = await self._request(
            "POST",
            path,
            token=token,
            json={"shipment_id": [int(s) for s in shipment_ids]},
        )
        url = data.get(url_key) if isinstance(data, dict) else None
        if not url:
            raise ShiprocketAPIError(
                message=extract_error_message(data) if isinstance(data, dict) and data.get("message") else f"Shiprocket returned no {url_key}",
                code="DOCUMENT_NOT_GENERATED",
                details={"response": data},
            )
        return ShipmentDocument(url=url, raw=data)

    async def generate_label(self, token: str, shipment_ids: Sequence[str]) -> ShipmentDocument:
        return await self._generate_document(token, LABEL_PATH, "label_url", shipment_ids)

    async def generate_manifest(self, token: str, shipment_ids: Sequence[str]) -> ShipmentDocument:
        return await self._generate_document(token, MANIFEST_PATH, "manifest_url", shipment_ids)

    async def generate_invoice(self, token: str, shipment_ids: Sequence[str]) -> ShipmentDocument:
        return await self._generate_document(token, INVOICE_PATH, "invoice_url", shipment_ids)

    # ==================== Tracking ====================

    def _parse_tracking(self, body: Any) -> TrackingResult:
        tracking = _find_tracking_data(body)
        if not tracking:
            raise ShiprocketAPIError(
                message="No tracking data in Shiprocket response",
                code="TRACKING_UNAVAILABLE",
                details={"response": body},
            )
        if tracking.get("error"):
            raise ShiprocketAPIError(message=str(tracking["error"]), code="TRACKING_UNAVAILABLE")

        track = tracking.get("shipment_track") or []
        summary = track[0] if track and isinstance(track[0], dict) else {}

        events = []
        for activity in tracking.get("shipment_track_activities") or []:
            events.append(TrackingEvent(
                date=activity.get("date"),
                status=str(activity.get("status") or activity.get("sr-status-label") or ""),
                activity=activity.get("activity", ""),
                location=activity.get("location"),
            ))

        return TrackingResult(
            awb_code=_as_str(summary.get("awb_code")),
            courier_name=summary.get("courier_name"),
            current_status=summary.get("current_status"),
            shipment_status=tracking.get("shipment_status"),
            track_url=tracking.get("track_url"),
            events=events,
            raw=body,
        )

    async def track_by_shipment_id(self, token: str, shipment_id: str) -> TrackingResult:
        data = await self._request("GET", f"{TRACK_SHIPMENT_PATH}/{shipment_id}", token=token)
        return self._parse_tracking(data)

    async def track_by_awb(self, token: str, awb_code: str) -> TrackingResult:
        data = await self._request("GET", f"{TRACK_AWB_PATH}/{awb_code}", token=token)
        return self._parse_tracking(data)
