"""API routers for kubetally."""

from fastapi import APIRouter

from kubetally.api import settings, system, workloads

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(workloads.router, prefix="/workloads", tags=["workloads"])
api_router.include_router(settings.router, prefix="/settings", tags=["settings"])
api_router.include_router(system.router, prefix="/system", tags=["system"])
