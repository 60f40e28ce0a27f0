"""
Custom Exception Hierarchy

Structured exceptions shared by the services and the HTTP layer.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Reservation errors (2xxx)
    RESERVATION_CLAIM_FAILED = "ERR_2001"
    RESERVATION_CONFLICT = "ERR_2002"
    RESERVATION_NOT_FOUND = "ERR_2003"
    RESERVATION_INVALID_STATUS = "ERR_2004"

    # Webhook ledger errors (3xxx)
    LEDGER_EVENT_NOT_RECORDED = "ERR_3001"
    WEBHOOK_SIGNATURE_INVALID = "ERR_3002"

    # Configuration errors (4xxx)
    CONFIGURATION_MISSING = "ERR_4001"

    # External service errors (5xxx)
    ALERT_CHANNEL_ERROR = "ERR_5001"
    PAYPAL_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"


class ClaimErrorCode(str, Enum):
    """Why a reservation claim was refused"""

    PUPPY_NOT_FOUND = "PUPPY_NOT_FOUND"
    PUPPY_NOT_AVAILABLE = "PUPPY_NOT_AVAILABLE"
    ALREADY_RESERVED = "ALREADY_RESERVED"
    RACE_CONDITION_LOST = "RACE_CONDITION_LOST"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    INVALID_DEPOSIT = "INVALID_DEPOSIT"
    DEPOSIT_EXCEEDS_PRICE = "DEPOSIT_EXCEEDS_PRICE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


# Outcomes that are normal under concurrent or repeated delivery; no operator alert
EXPECTED_CLAIM_ERRORS = frozenset({
    ClaimErrorCode.ALREADY_RESERVED,
    ClaimErrorCode.RACE_CONDITION_LOST,
    ClaimErrorCode.DUPLICATE_PAYMENT,
})

_CLAIM_STATUS_CODES = {
    ClaimErrorCode.PUPPY_NOT_FOUND: 404,
    ClaimErrorCode.PUPPY_NOT_AVAILABLE: 409,
    ClaimErrorCode.ALREADY_RESERVED: 409,
    ClaimErrorCode.RACE_CONDITION_LOST: 409,
    ClaimErrorCode.DUPLICATE_PAYMENT: 409,
    ClaimErrorCode.INVALID_DEPOSIT: 400,
    ClaimErrorCode.DEPOSIT_EXCEEDS_PRICE: 400,
    ClaimErrorCode.VALIDATION_ERROR: 400,
    ClaimErrorCode.DATABASE_ERROR: 500,
}


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class RateLimitExceededError(AppException):
    """Raised when an inquiry is rejected by the windowed counter"""

    def __init__(self, reason: str, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"reason": reason}
        )
        self.reason = reason


class ReservationClaimError(AppException):
    """
    Raised when the atomic claim is refused.

    ``code`` tells the caller which invariant failed so it can decide between
    treating the event as a duplicate, refunding, or alerting.
    """

    def __init__(
        self,
        code: ClaimErrorCode,
        message: str,
        puppy_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=(
                ErrorCode.RESERVATION_CONFLICT
                if code in EXPECTED_CLAIM_ERRORS
                else ErrorCode.RESERVATION_CLAIM_FAILED
            ),
            status_code=_CLAIM_STATUS_CODES.get(code, 400),
            details=details
        )
        self.code = code
        self.details["reason"] = code.value
        if puppy_id:
            self.details["puppy_id"] = puppy_id

    @property
    def is_expected(self) -> bool:
        """Lost race / duplicate delivery, as opposed to a real fault"""
        return self.code in EXPECTED_CLAIM_ERRORS


class ReservationNotFoundError(NotFoundException):
    """Raised when a reservation id does not exist"""

    def __init__(self, reservation_id: str):
        super().__init__(
            resource="Reservation",
            identifier=reservation_id,
            error_code=ErrorCode.RESERVATION_NOT_FOUND
        )


class LedgerConsistencyError(AppException):
    """
    A webhook event could not be found in the ledger when marking it.

    The event was never recorded on receipt, so processing must stop before
    any side effect.
    """

    def __init__(self, operation: str, provider: str, event_id: str, idempotency_key: str):
        super().__init__(
            message=f"No webhook event found to mark as {operation}: {provider}:{event_id}",
            error_code=ErrorCode.LEDGER_EVENT_NOT_RECORDED,
            status_code=500,
            details={
                "operation": operation,
                "provider": provider,
                "event_id": event_id,
                "idempotency_key": idempotency_key,
            }
        )


class WebhookSignatureError(AppException):
    """Raised when a provider signature does not verify"""

    def __init__(self, provider: str, message: str = "Invalid webhook signature"):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
            status_code=400,
            details={"provider": provider}
        )


class ConfigurationError(AppException):
    """A required secret or credential is not configured"""

    def __init__(self, setting_name: str, message: str | None = None):
        super().__init__(
            message=message or f"{setting_name} is not configured",
            error_code=ErrorCode.CONFIGURATION_MISSING,
            status_code=500,
            details={"setting": setting_name}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class AlertChannelError(ExternalServiceException):
    """Raised by a single alert or notification channel; caught inside its service"""

    def __init__(self, channel: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=channel,
            message=f"Alert channel {channel} failed: {message}",
            error_code=ErrorCode.ALERT_CHANNEL_ERROR,
            details=details
        )


class PayPalAPIError(ExternalServiceException):
    """Raised when the PayPal REST API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="paypal",
            message=f"PayPal API error: {message}",
            error_code=ErrorCode.PAYPAL_ERROR,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
