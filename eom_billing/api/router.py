"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from eom_billing.api.health import router as health_router
from eom_billing.api.jobs import router as jobs_router
from eom_billing.api.orders import router as orders_router
from eom_billing.api.review import router as review_router
from eom_billing.api.statements import router as statements_router
from eom_billing.api.webhooks import router as webhooks_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(orders_router)
api_router.include_router(webhooks_router)
api_router.include_router(statements_router)
api_router.include_router(review_router)
api_router.include_router(jobs_router)
