"""Trip API routes.

Learn: GET /trips/:trip_ref is the reference consumer of
require_trip_access — the dependency resolves the id-or-slug, checks the
caller's role, and hands the handler an authorized Trip.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.dependencies import (
    CurrentIdentity,
    get_current_user,
    require_admin,
    require_trip_access,
)
from tripgate.auth.roles import Role
from tripgate.db.engine import get_db
from tripgate.db.models import Trip
from tripgate.errors import TripConflict
from tripgate.schemas.access import TripCreate, TripRead
from tripgate.services.access_service import AccessResolver
from tripgate.services.trip_service import TripService

router = APIRouter()


def _svc(db: AsyncSession = Depends(get_db)) -> TripService:
    return TripService(db)


@router.post("/trips", response_model=TripRead, status_code=201)
async def create_trip(
    body: TripCreate,
    admin: CurrentIdentity = Depends(require_admin),
    svc: TripService = Depends(_svc),
):
    try:
        return await svc.create_trip(body.slug, body.title, created_by=admin.account_id)
    except TripConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/trips", response_model=list[TripRead])
async def list_trips(
    identity: CurrentIdentity = Depends(get_current_user),
    svc: TripService = Depends(_svc),
):
    """All trips for admins; granted trips (with role) for everyone else."""
    return [
        TripRead(
            id=trip.id,
            slug=trip.slug,
            title=trip.title,
            created_at=trip.created_at,
            role=role,
        )
        for trip, role in await svc.list_for(identity.claims)
    ]


@router.get("/trips/{trip_ref}", response_model=TripRead)
async def get_trip(
    trip: Trip = Depends(require_trip_access(Role.VIEWER)),
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    role = None
    if not identity.is_admin:
        role = await AccessResolver(db).role_for(identity.account_id, trip.id)
    return TripRead(
        id=trip.id,
        slug=trip.slug,
        title=trip.title,
        created_at=trip.created_at,
        role=role,
    )
