"""
Fulfillment Exception Hierarchy

All exceptions carry code, message, details and severity so a failed
fulfillment can be logged, shown to an operator and recorded in a batch
ledger without string parsing.

Exception Hierarchy:
    FulfillmentBaseError
    ├── ShiprocketAuthError
    │   ├── MissingCredentialsError
    │   ├── AuthCooldownError
    │   └── AuthFailedError
    ├── ShipmentValidationError
    │   ├── MissingCustomerEmailError
    │   ├── IncompleteAddressError
    │   └── EmptyOrderError
    ├── OrderNotFoundError
    ├── ShiprocketAPIError
    ├── ShipmentCreateFailedError
    ├── NoServiceableCourierError     (non-fatal)
    ├── AwbAssignmentFailedError      (non-fatal)
    ├── OrderWriteFailedError         (non-fatal)
    └── NotificationFailedError       (non-fatal)
"""
from typing import Optional, Dict, Any, List


class FulfillmentBaseError(Exception):
    """
    Base exception for all fulfillment errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "FULFILLMENT_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# AUTHENTICATION ERRORS
# =============================================================================

class ShiprocketAuthError(FulfillmentBaseError):
    """Base exception for Shiprocket authentication errors."""
    default_code = "SHIPROCKET_AUTH_ERROR"
    default_severity = "P1"


class MissingCredentialsError(ShiprocketAuthError):
    """No credential source yielded both email and password."""
    default_code = "MISSING_CREDENTIALS"
    default_severity = "P0"


class AuthCooldownError(ShiprocketAuthError):
    """A recent authentication failure blocks new login attempts."""
    default_code = "AUTH_COOLDOWN"

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["retry_after_seconds"] = retry_after_seconds
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, details=details, **kwargs)


class AuthFailedError(ShiprocketAuthError):
    """Shiprocket rejected the login or could not be reached."""
    default_code = "AUTH_FAILED"
    default_severity = "P0"


# =============================================================================
# VALIDATION ERRORS (raised before any network call)
# =============================================================================

class ShipmentValidationError(FulfillmentBaseError):
    """Base exception for shipment request validation errors."""
    default_code = "SHIPMENT_VALIDATION_FAILED"
    default_severity = "P2"


class MissingCustomerEmailError(ShipmentValidationError):
    """No customer email on the shipping address, order or billing address."""
    default_code = "MISSING_CUSTOMER_EMAIL"


class IncompleteAddressError(ShipmentValidationError):
    """Shipping address is missing required fields."""
    default_code = "INCOMPLETE_ADDRESS"

    def __init__(
        self,
        message: str,
        missing_fields: Optional[List[str]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["missing_fields"] = missing_fields or []
        self.missing_fields = missing_fields or []
        super().__init__(message, details=details, **kwargs)


class EmptyOrderError(ShipmentValidationError):
    """Order has no line items."""
    default_code = "EMPTY_ORDER"


# =============================================================================
# ORDER / PROVIDER ERRORS
# =============================================================================

class OrderNotFoundError(FulfillmentBaseError):
    """Order store has no order with the requested id."""
    default_code = "ORDER_NOT_FOUND"


class ShiprocketAPIError(FulfillmentBaseError):
    """Shiprocket API call failed (non-2xx, network error or error payload)."""
    default_code = "SHIPROCKET_API_ERROR"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.setdefault("status_code", status_code)
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class ShipmentCreateFailedError(FulfillmentBaseError):
    """Shiprocket did not register the shipment. Nothing exists remotely."""
    default_code = "SHIPMENT_CREATE_FAILED"
    default_severity = "P1"


# =============================================================================
# NON-FATAL ERRORS (the remote shipment already exists)
# =============================================================================

class NoServiceableCourierError(FulfillmentBaseError):
    """No courier services the pickup/delivery pincode pair."""
    default_code = "NO_SERVICEABLE_COURIER"


class AwbAssignmentFailedError(FulfillmentBaseError):
    """Courier assignment / AWB generation failed for a registered shipment."""
    default_code = "AWB_ASSIGNMENT_FAILED"


class OrderWriteFailedError(FulfillmentBaseError):
    """Local order update failed after the remote shipment was created."""
    default_code = "ORDER_WRITE_FAILED"
    default_severity = "P1"


class NotificationFailedError(FulfillmentBaseError):
    """Shipped notification could not be sent."""
    default_code = "NOTIFICATION_FAILED"
    default_severity = "P3"


NON_FATAL_ERRORS = (
    NoServiceableCourierError,
    AwbAssignmentFailedError,
    OrderWriteFailedError,
    NotificationFailedError,
)
