"""Error taxonomy for the order lifecycle engine.

Services raise these; ``storefront.main`` maps ``kind`` to an HTTP status.
Every error carries a stable ``kind`` and a human-readable message, plus
optional structured ``extra`` data for the response body.
"""

from typing import Any


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    kind = "error"

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)


class NotFoundError(StorefrontError):
    """Raised when a cart/session/order/payment/product/address is absent or not owned."""

    kind = "not_found"

    def __init__(self, resource: str, identifier: Any | None = None):
        self.resource = resource
        self.identifier = identifier
        msg = f"{resource} not found"
        if identifier is not None:
            msg = f"{resource} not found: {identifier}"
        super().__init__(msg)


class InvalidInputError(StorefrontError):
    kind = "invalid_input"


class SelectionNotInCartError(InvalidInputError):
    """Raised when checkout selects product ids that are not in the cart."""

    kind = "selection_not_in_cart"

    def __init__(self, product_ids: list[str]):
        self.product_ids = product_ids
        super().__init__(
            f"Selected items not found in cart: {', '.join(product_ids)}",
            product_ids=product_ids,
        )


class NoValidItemsError(InvalidInputError):
    """Raised when every item of a checkout session became unavailable."""

    kind = "no_valid_items"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("All items in checkout are no longer available")


class PaymentVerificationFailedError(InvalidInputError):
    kind = "payment_verification_failed"

    def __init__(self, payment_id: str, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Payment verification failed: {reason}", payment_id=payment_id)


class InsufficientStockError(StorefrontError):
    """Raised when a product cannot cover the requested quantity."""

    kind = "insufficient_stock"

    def __init__(self, product_id: Any, requested: int, available: int | None = None, name: str | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or str(product_id)
        msg = f"Insufficient stock for {label} (requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(
            f"{msg})",
            product_id=str(product_id),
            requested=requested,
            available=available,
        )


class InvalidStateTransitionError(StorefrontError):
    kind = "invalid_state_transition"

    def __init__(self, current: str, requested: str, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Invalid status transition: {current} -> {requested}",
            current=current,
            requested=requested,
        )


class AmountMismatchError(StorefrontError):
    """Raised when a payment amount differs from its order total. Never corrected."""

    kind = "amount_mismatch"

    def __init__(self, expected: float, actual: float):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Payment amount {actual} does not match order total {expected}",
            expected=expected,
            actual=actual,
        )


class GatewayError(StorefrontError):
    """Raised on gateway timeouts or malformed responses. Safe to retry."""

    kind = "gateway_error"


class ConcurrencyConflictError(StorefrontError):
    kind = "concurrency_conflict"


class UnauthorizedError(StorefrontError):
    kind = "unauthorized"


class ForbiddenError(StorefrontError):
    kind = "forbidden"


ERROR_STATUS_CODES: dict[str, int] = {
    NotFoundError.kind: 404,
    InvalidInputError.kind: 400,
    SelectionNotInCartError.kind: 400,
    NoValidItemsError.kind: 400,
    PaymentVerificationFailedError.kind: 400,
    InsufficientStockError.kind: 409,
    InvalidStateTransitionError.kind: 409,
    AmountMismatchError.kind: 500,
    GatewayError.kind: 502,
    ConcurrencyConflictError.kind: 409,
    UnauthorizedError.kind: 401,
    ForbiddenError.kind: 403,
}
