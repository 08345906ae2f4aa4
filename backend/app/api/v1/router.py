"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import dispatch, geofences, ops, presence, routing

router = APIRouter()

router.include_router(presence.router)
router.include_router(dispatch.router)
router.include_router(geofences.router)
router.include_router(routing.router)
router.include_router(ops.router)
