"""
API Routes
"""
from fastapi import APIRouter

from permit_payments.api.routes.admin import router as admin_router
from permit_payments.api.routes.payments import router as payments_router
from permit_payments.api.webhooks.stripe import router as stripe_webhook_router

router = APIRouter()

router.include_router(stripe_webhook_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(payments_router, prefix="/payments", tags=["payments"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
