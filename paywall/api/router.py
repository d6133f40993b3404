"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from paywall.api.billing import router as billing_router
from paywall.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(billing_router)
api_router.include_router(health_router)
