"""Exception taxonomy for the storefront checkout service.

Every error carries the HTTP status it maps to and a message that is safe to
show to the client. Internal detail goes into attributes and logs, never into
``message``.
"""

from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# =============================================================================
# VALIDATION (user-correctable)
# =============================================================================

class ValidationError(StorefrontError):
    status_code = 400
    default_message = "Validation failed"


class PriceMismatchError(ValidationError):
    """Raised when a cart snapshot disagrees with current catalog pricing."""

    def __init__(self, field: str, expected: float, submitted: float, item_ref: Optional[str] = None):
        self.field = field
        self.expected = expected
        self.submitted = submitted
        self.item_ref = item_ref
        if item_ref:
            msg = f"Price mismatch for {item_ref}. Please refresh your cart and try again."
        else:
            msg = f"{field.capitalize()} calculation mismatch. Please refresh your cart and try again."
        super().__init__(msg)


class ProductUnavailableError(ValidationError):
    def __init__(self, item_ref: str):
        self.item_ref = item_ref
        super().__init__(f"Product is no longer available: {item_ref}")


class CouponInvalidError(ValidationError):
    default_message = "Invalid coupon code"


class IntentOwnershipError(ValidationError):
    default_message = "User mismatch"


class IntentExpiredError(ValidationError):
    default_message = "Order session expired. Please restart checkout."


class PaymentNotCapturedError(ValidationError):
    default_message = "Payment not captured"


class InvalidStatusTransitionError(ValidationError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change status from {current} to {requested}")


# =============================================================================
# AUTHENTICATION
# =============================================================================

class AuthenticationError(StorefrontError):
    status_code = 401
    default_message = "Authentication required"


class InvalidTokenError(AuthenticationError):
    default_message = "Invalid token"


class ForbiddenError(StorefrontError):
    status_code = 403
    default_message = "Insufficient permissions"


class SignatureVerificationError(AuthenticationError):
    """Raised when a gateway signature does not match.

    Gateway-facing callers expect 400 rather than 401 for a bad signature.
    """

    status_code = 400
    default_message = "Invalid payment signature"


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(StorefrontError):
    status_code = 404
    default_message = "Not found"


class UnitNotFoundError(NotFoundError):
    """Raised when a referenced product or variant does not exist."""

    def __init__(self, unit_ref: str):
        self.unit_ref = unit_ref
        super().__init__(f"Product not found: {unit_ref}")


class OrderNotFoundError(NotFoundError):
    default_message = "Order not found"


class IntentNotFoundError(NotFoundError):
    default_message = "Order session expired or not found"


# =============================================================================
# CONFLICTS
# =============================================================================

class ConflictError(StorefrontError):
    status_code = 409
    default_message = "Conflict"


class InsufficientStockError(ConflictError):
    """Expected failure: the caller reports out-of-stock, no automatic retry."""

    status_code = 400

    def __init__(self, unit_ref: str, product_name: str, requested: int):
        self.unit_ref = unit_ref
        self.product_name = product_name
        self.requested = requested
        super().__init__(f"Insufficient stock for product: {product_name}")


class DuplicateOrderNumberError(ConflictError):
    default_message = "Duplicate order number"


class DuplicateOrderError(ConflictError):
    """Raised when an order for the same gateway order already exists."""

    default_message = "Order already created for this payment"


class OrderNotCancellableError(ConflictError):
    default_message = "Order not found or cannot be cancelled"


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

class TransientInfraError(StorefrontError):
    status_code = 503
    default_message = "Service temporarily unavailable"


class GatewayError(TransientInfraError):
    status_code = 502
    default_message = "Payment gateway unavailable"


class FatalIntegrityError(StorefrontError):
    """Stock was reserved or money captured but the order could not be stored."""

    status_code = 500
    default_message = "Failed to create order"
