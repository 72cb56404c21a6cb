"""Domain errors raised by services and mapped to HTTP responses in main."""
from typing import Dict, Optional


class MarketplaceError(Exception):
    """Base class for errors that have a stable client-facing representation."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.headers = headers


class ValidationFailed(MarketplaceError):
    status_code = 400
    code = "validation_error"


class InvalidQuantity(MarketplaceError):
    status_code = 400
    code = "invalid_quantity"


class InsufficientBalance(MarketplaceError):
    status_code = 400
    code = "insufficient_balance"


class TransactionNotConfirmed(MarketplaceError):
    status_code = 400
    code = "transaction_not_confirmed"


class Unauthorized(MarketplaceError):
    status_code = 401
    code = "unauthorized"


class SignatureMismatch(Unauthorized):
    """Webhook signature did not verify. Never detailed to the caller."""

    def __init__(self):
        super().__init__("Unauthorized")


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class Conflict(MarketplaceError):
    status_code = 409
    code = "conflict"


class InvalidStatusTransition(Conflict):
    pass


class ConfigurationError(MarketplaceError):
    status_code = 500
    code = "configuration_error"


class PaymentInitiationFailed(MarketplaceError):
    status_code = 502
    code = "payment_initiation_failed"


class ExternalServiceUnavailable(MarketplaceError):
    """Provider unreachable or timed out. Safe to retry."""

    status_code = 503
    code = "external_service_unavailable"

    def __init__(self, message: str, retry_after: int = 30):
        super().__init__(message, headers={"Retry-After": str(retry_after)})
