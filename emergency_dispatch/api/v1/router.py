"""
Main API router for v1 endpoints
"""
from fastapi import APIRouter

from emergency_dispatch.api.v1.emergency import router as emergency_router
from emergency_dispatch.api.v1.notifications import router as notifications_router
from emergency_dispatch.api.v1.responders import router as responders_router

api_router = APIRouter()

api_router.include_router(emergency_router, prefix="/emergency", tags=["emergency"])
api_router.include_router(notifications_router, prefix="/notifications", tags=["notifications"])
api_router.include_router(responders_router, prefix="/responders", tags=["responders"])
