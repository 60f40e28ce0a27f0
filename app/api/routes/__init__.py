"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.cron import router as cron_router
from app.api.routes.health import router as health_router
from app.api.routes.inquiries import router as inquiries_router
from app.api.routes.puppies import router as puppies_router
from app.api.webhooks.paypal import router as paypal_router
from app.api.webhooks.stripe import router as stripe_router

router = APIRouter()

router.include_router(puppies_router, prefix="/puppies", tags=["puppies"])
router.include_router(inquiries_router, prefix="/inquiries", tags=["inquiries"])
router.include_router(stripe_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(paypal_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(cron_router, prefix="/cron", tags=["cron"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
router.include_router(health_router, prefix="/health", tags=["health"])
