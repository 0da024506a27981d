# agrimarket/errors.py
"""Exception hierarchy shared by services and the HTTP layer.

Every error carries the HTTP status it maps to, so handlers never need
to know which service raised it.
"""

from typing import Optional


class MarketplaceError(Exception):
    """Base exception for all marketplace errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Raised for bad input or a violated business rule."""

    status_code = 400


class NotFoundError(MarketplaceError):
    """Raised when a referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id=None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity} not found"
        if entity_id is not None:
            msg = f"{entity} not found: {entity_id}"
        super().__init__(msg)


class AuthenticationError(MarketplaceError):
    """Raised when a request carries no usable caller identity."""

    status_code = 401


class PermissionDeniedError(MarketplaceError):
    """Raised when a non-admin calls an admin-only operation."""

    status_code = 403


class UnauthorizedOwnershipError(PermissionDeniedError):
    """Raised when a restaurant touches another restaurant's data."""


class InsufficientStockError(ValidationError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}. "
            f"Available: {available}, Required: {requested}"
        )


class InsufficientFundsError(ValidationError):
    """Raised when a wallet balance cannot cover a debit."""

    def __init__(self, available, required):
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient wallet balance. Available: {available}, Required: {required}"
        )


class InactiveWalletError(ValidationError):
    """Raised when a debit or top-up targets a deactivated wallet."""

    def __init__(self, wallet_id=None):
        self.wallet_id = wallet_id
        super().__init__("Wallet is inactive")


class InvalidTransitionError(ValidationError):
    """Raised when a status change is not allowed from the current state."""

    def __init__(self, current, attempted, reason: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        msg = f"Invalid status transition from {_value(current)} to {_value(attempted)}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class PaymentInProgressError(ValidationError):
    """Raised when an order already has a payment attempt awaiting its outcome."""

    def __init__(self, reference: Optional[str] = None):
        self.reference = reference
        super().__init__(
            "A payment attempt is already in progress for this order; "
            "verify it before paying again"
        )


class WebhookVerificationError(MarketplaceError):
    """Raised when a provider callback fails signature verification."""

    status_code = 401


class ConfigurationError(MarketplaceError):
    """Raised when a required secret or setting is missing."""

    status_code = 500


class ProviderError(MarketplaceError):
    """Raised when an external payment provider rejects or fails a call."""

    status_code = 502

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderTimeoutError(ProviderError):
    """Raised when a provider does not answer within the payment timeout.

    The charge may still complete on the provider side.
    """


class TransientInfraError(MarketplaceError):
    """Raised when the database stays unreachable after bounded retries."""

    status_code = 503


def _value(status):
    return getattr(status, "value", status)
