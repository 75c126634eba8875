"""
ORM models.

Importing this package registers every table on ``Base.metadata``.
"""

from app.models.shop import (
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
)
from app.models.user import User, UserRole

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentStatus",
    "Product",
    "User",
    "UserRole",
]
