"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Unlike a blanket router-level auth dependency, each route here
declares its own requirement (get_current_user, require_admin, or
require_trip_access) because the auth router mixes open ceremony
endpoints with signed-in ones. Health is open.
"""

from fastapi import APIRouter

from tripgate.api.auth import router as auth_router
from tripgate.api.health import router as health_router
from tripgate.api.invites import router as invites_router
from tripgate.api.trip_access import router as trip_access_router
from tripgate.api.trips import router as trips_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(trips_router, tags=["trips"])
api_router.include_router(trip_access_router, tags=["trip-access"])
api_router.include_router(invites_router, tags=["invites"])
