"""Error taxonomy for payment operations.

Each error carries a stable code and the HTTP status the route layer renders.
"""

from typing import Any


class PaymentError(Exception):
    """Base class for all payment-domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PaymentError):
    """Raised for malformed or out-of-range inputs before anything is persisted."""

    def __init__(self, message: str, field: str | None = None) -> None:
        details = {"field": field} if field else None
        super().__init__(message, code="VALIDATION_ERROR", status_code=400, details=details)


class NotFoundError(PaymentError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="NOT_FOUND", status_code=404)


class AuthorizationError(PaymentError):
    """Raised when the caller is not a party allowed to act on the resource."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="FORBIDDEN", status_code=403)


class StateConflictError(PaymentError):
    """Raised when the requested action is illegal for the current state."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="STATE_CONFLICT", status_code=409, details=details)


class GatewayError(PaymentError):
    """Raised when the card gateway call fails (network, API or config)."""

    def __init__(self, message: str, code: str = "GATEWAY_ERROR", status_code: int = 502) -> None:
        super().__init__(message, code=code, status_code=status_code)


class WebhookSignatureError(GatewayError):
    def __init__(self, message: str = "invalid webhook signature") -> None:
        super().__init__(message, code="WEBHOOK_SIGNATURE_INVALID", status_code=400)


class UpiNotConfiguredError(PaymentError):
    def __init__(self) -> None:
        super().__init__("UPI payments are not configured", code="UPI_NOT_CONFIGURED", status_code=503)
