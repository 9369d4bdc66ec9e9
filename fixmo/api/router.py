"""
API router: aggregates all route modules.
"""
from fastapi import APIRouter
from fixmo.api.appointments import router as appointments_router
from fixmo.api.backjobs import router as backjobs_router
from fixmo.api.admin import router as admin_router
from fixmo.api.conversations import router as conversations_router
from fixmo.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(appointments_router)
api_router.include_router(backjobs_router)
api_router.include_router(admin_router)
api_router.include_router(conversations_router)
api_router.include_router(health_router)
