from typing import Optional, Dict, Any


class BillingWebhookException(Exception):
    """Base exception for all billing webhook errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AuthenticationFailure(BillingWebhookException):
    """Raised when a webhook signature is missing or does not match."""

    def __init__(self, message: str = "Invalid signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_signature", status_code=401, details=details)


class ReplayRejected(BillingWebhookException):
    """Raised when the event timestamp is missing, unparseable or outside the skew window."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="replay_rejected", status_code=401, details=details)


class MissingEventId(BillingWebhookException):
    """Raised when the caller did not supply an event id header."""

    def __init__(self, message: str = "Missing event id", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="missing_event_id", status_code=400, details=details)


class MalformedPayload(BillingWebhookException):
    """Raised for unparseable payloads and unexpected processing failures."""

    def __init__(self, message: str = "Invalid payload", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_payload", status_code=400, details=details)


class UnsupportedEventType(BillingWebhookException):
    """Raised when the event type is not on the provider allow-list."""

    def __init__(self, message: str = "Unsupported event type", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unsupported_event_type", status_code=400, details=details)


class UnresolvableTenant(BillingWebhookException):
    """Raised when neither metadata nor external ids identify an organization."""

    def __init__(
        self,
        message: str = "Missing subscription identifiers",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code="unresolvable_tenant", status_code=400, details=details)


class OrganizationNotFound(BillingWebhookException):
    """Raised when the resolved organization row does not exist."""

    def __init__(self, message: str = "Org not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="not_found", status_code=404, details=details)


class PaymentProviderError(BillingWebhookException):
    """Raised when an outbound payment provider call fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="payment_provider_error", status_code=502, details=details)
