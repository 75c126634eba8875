"""
API Version 1 Router.

Combines all API endpoints under /api/v1 prefix.
"""

from fastapi import APIRouter

from app.api.v1.endpoints import payments, webhooks

router = APIRouter()

# Include endpoint routers
router.include_router(payments.router, prefix="/payments", tags=["Payments"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
