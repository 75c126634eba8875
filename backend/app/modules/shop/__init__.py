"""
Shop Module - payment and inventory consistency.

Features:
- Stock ledger with non-negative, atomic adjustments
- Payment gateway adapter (Stripe)
- Payment record state machine
- Order payment coordination
- Payment intents and idempotent confirmation
"""

from app.modules.shop.gateway import PaymentGateway, StripeGateway
from app.modules.shop.inventory import StockLedger
from app.modules.shop.orders import OrderCoordinator
from app.modules.shop.payments import PaymentStore
from app.modules.shop.service import PaymentService

__all__ = [
    "OrderCoordinator",
    "PaymentGateway",
    "PaymentService",
    "PaymentStore",
    "StockLedger",
    "StripeGateway",
]
