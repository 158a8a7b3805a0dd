"""
Store Exception Hierarchy

Every error raised by the fulfillment pipeline carries a stable error code
and the HTTP status the API layer renders it with.
"""
from typing import Optional, Dict, Any


class StoreError(Exception):
    """
    Base exception for all store errors.

    Rendered by the API as {"error_code", "message", "details"}.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class AuthenticationError(StoreError):
    """
    Webhook signature verification failed.

    Examples:
    - Signature header missing
    - HMAC over the raw body does not match
    """

    status_code = 401

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:signature_invalid", message, details)


class MalformedPayload(StoreError):
    """
    Webhook body could not be parsed into a status update.

    Examples:
    - Body is not JSON
    - Transaction reference or status missing
    - Status outside the known vocabulary
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:malformed_payload", message, details)


class UnknownTransaction(StoreError):
    """Referenced transaction does not exist."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("transaction:not_found", message, details)


class UnknownGrant(StoreError):
    """Referenced grant does not exist."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("grant:not_found", message, details)


class UnknownUser(StoreError):
    """Referenced user does not exist or has no matching game identity."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("user:not_found", message, details)


class UnknownProduct(StoreError):
    """Checkout references a product that does not exist."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("product:not_found", message, details)


class ProductUnavailable(StoreError):
    """Checkout references an inactive product."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("product:unavailable", message, details)


class InsufficientStock(StoreError):
    """
    Requested quantity exceeds finite stock.

    Raised at checkout only, before any transaction is created.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("product:insufficient_stock", message, details)


class InvalidTransition(StoreError):
    """
    Requested state change is not allowed from the current state.

    Example:
    - Cancelling a transaction that is no longer pending
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("state:invalid_transition", message, details)


class ConcurrentUpdateError(StoreError):
    """Conditional account update kept losing to concurrent writers."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("state:concurrent_update", message, details)


class InvalidIdentifier(StoreError):
    """Game identity is not in the provider:opaque-id format or uses an unknown provider."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("game:invalid_identifier", message, details)


class PaymentProviderError(StoreError):
    """Payment provider call failed (charge creation, status, cancellation)."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:provider_error", message, details)


class DeliveryTransient(StoreError):
    """
    Game server unreachable or recipient offline.

    Never surfaced to the end user; the coordinator turns it into a retry hint.
    """

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("delivery:transient", message, details)


class DeliveryPermanent(StoreError):
    """
    Game server rejected the delivery outright (bad token, missing resource).

    Treated as retryable like DeliveryTransient; operators see "failed" grants
    once attempts are exhausted.
    """

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("delivery:permanent", message, details)
