from fastapi import APIRouter

from app.api.routes.auth import router as auth_router
from app.api.routes.health import router as health_router
from app.api.routes.integrations import router as integrations_router
from app.api.routes.scheduling import router as scheduling_router

_FEATURE_ROUTERS = (auth_router, integrations_router, scheduling_router)

api_router = APIRouter()
api_router.include_router(health_router)

v1_router = APIRouter(prefix="/v1")
for feature_router in _FEATURE_ROUTERS:
    # Served both unversioned and under /v1 while the frontend migrates.
    api_router.include_router(feature_router)
    v1_router.include_router(feature_router)

api_router.include_router(v1_router)
