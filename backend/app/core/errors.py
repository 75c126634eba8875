"""
Domain errors for the payment engine.

Every error carries a stable ``kind`` and a human-readable message.
The API layer maps kinds to HTTP status codes.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error categories exposed to clients."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    INVALID_AMOUNT = "INVALID_AMOUNT"


class ShopError(Exception):
    """Base class for all payment engine failures."""

    kind: ErrorKind = ErrorKind.CONFLICT
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ==================== Not found ====================


class NotFound(ShopError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class OrderNotFound(NotFound):
    default_message = "Order not found"


class PaymentNotFound(NotFound):
    default_message = "Payment not found"


class ProductNotFound(NotFound):
    default_message = "Product not found"


# ==================== Conflicts ====================


class Conflict(ShopError):
    kind = ErrorKind.CONFLICT


class DuplicateActivePayment(Conflict):
    default_message = "A payment is already in progress for this order"


class OrderNotPayable(Conflict):
    default_message = "Order is not awaiting payment"


class AmountMismatch(Conflict):
    default_message = "Amount does not match the order total"


class InvalidTransition(Conflict):
    default_message = "Payment cannot move to the requested status"


class LockContention(Conflict):
    default_message = "The resource is busy, please retry"


# ==================== Stock ====================


class InsufficientStock(ShopError):
    kind = ErrorKind.INSUFFICIENT_STOCK
    default_message = "Insufficient stock"


# ==================== Gateway ====================


class GatewayUnavailable(ShopError):
    kind = ErrorKind.GATEWAY_UNAVAILABLE
    default_message = "Payment provider is temporarily unavailable"


class InvalidAmount(ShopError):
    kind = ErrorKind.INVALID_AMOUNT
    default_message = "Amount was rejected by the payment provider"
