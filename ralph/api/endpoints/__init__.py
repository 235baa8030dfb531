"""
API router module.

Collects the endpoint routers into one router mounted at the root.
"""

from fastapi import APIRouter

from ralph.api.endpoints.events import router as events_router
from ralph.api.endpoints.execution import router as execution_router
from ralph.api.endpoints.plans import router as plans_router
from ralph.api.endpoints.system import router as system_router

api_router = APIRouter()

api_router.include_router(system_router, tags=["System"])
api_router.include_router(plans_router, tags=["Plans"])
api_router.include_router(execution_router, tags=["Execution"])
api_router.include_router(events_router, tags=["Events"])
