"""
Custom Exception Hierarchy

Payment errors are split by how they are handled:
- ValidationException: rejected before any external call
- ProviderError: decline / invalid request, mapped to a user message
- TransientInfraError: network, timeout, open breaker; absorbed by retry policy
- ConsistencyError: local and provider state disagree, resolved by reconciliation
- SecurityRejection: velocity / fraud veto, generic message for the caller
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Payment errors (2xxx)
    PAYMENT_DECLINED = "ERR_2001"
    PAYMENT_PROVIDER_ERROR = "ERR_2002"
    PAYMENT_IN_PROGRESS = "ERR_2003"
    PAYMENT_STATE_DIVERGENCE = "ERR_2004"
    PAYMENT_ORDER_NOT_FOUND = "ERR_2005"

    # Security errors (3xxx)
    SECURITY_REJECTED = "ERR_3001"
    WEBHOOK_SIGNATURE_INVALID = "ERR_3002"
    WEBHOOK_SECRET_MISSING = "ERR_3003"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


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
    """Raised when a customer retries a payment too often for one application"""

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


class ProviderError(AppException):
    """Raised when the payment provider rejects a request.

    ``message`` is the localized user-facing text; the raw provider code and
    type are kept for logs and metrics.
    """

    def __init__(
        self,
        user_message: str,
        provider_code: str | None = None,
        provider_type: str | None = None,
        is_decline: bool = False,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=user_message,
            error_code=ErrorCode.PAYMENT_DECLINED if is_decline else ErrorCode.PAYMENT_PROVIDER_ERROR,
            status_code=402 if is_decline else 502,
            details=details
        )
        self.user_message = user_message
        self.provider_code = provider_code
        self.provider_type = provider_type
        self.is_decline = is_decline
        if provider_code:
            self.details["provider_code"] = provider_code


class ConsistencyError(AppException):
    """Raised when local payment state cannot be reconciled with the provider's"""

    def __init__(
        self,
        message: str,
        application_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.PAYMENT_STATE_DIVERGENCE,
            status_code=409,
            details=details
        )
        if application_id is not None:
            self.details["application_id"] = application_id


class PaymentInProgressError(ConsistencyError):
    """Raised when an application already has a different open payment"""

    def __init__(self, application_id: int, payment_intent_id: str):
        super().__init__(
            message=f"Application {application_id} already has an open payment",
            application_id=application_id,
            details={"payment_intent_id": payment_intent_id}
        )
        self.error_code = ErrorCode.PAYMENT_IN_PROGRESS


class SecurityRejection(AppException):
    """Raised when risk screening vetoes a payment attempt.

    The rule list stays on the exception for logging; the API body only
    carries a generic message so fraud rules cannot be probed.
    """

    GENERIC_MESSAGE = "No pudimos procesar su pago en este momento. Por favor, intente más tarde."

    def __init__(self, risk_score: int, violations: list[dict[str, Any]]):
        super().__init__(
            message=self.GENERIC_MESSAGE,
            error_code=ErrorCode.SECURITY_REJECTED,
            status_code=403,
        )
        self.risk_score = risk_score
        self.violations = violations

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": {}
            }
        }


class WebhookSignatureError(AppException):
    """Raised when a webhook payload fails signature verification"""

    def __init__(self, reason: str):
        super().__init__(
            message="Invalid webhook signature",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
            status_code=400,
            details={"reason": reason}
        )


class WebhookSecretMissingError(AppException):
    """Raised when no webhook signing secret is configured"""

    def __init__(self):
        super().__init__(
            message="Webhook signing secret is not configured",
            error_code=ErrorCode.WEBHOOK_SECRET_MISSING,
            status_code=503,
        )


class TransientInfraError(AppException):
    """Base exception for network, timeout and availability errors"""

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
        self.service_name = service_name
        self.details["service"] = service_name


class ServiceTimeoutError(TransientInfraError):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(TransientInfraError):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds
