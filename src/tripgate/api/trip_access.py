"""Trip access API — admin management of who can see/edit which trip.

Learn: Routes for grant management (all admin-only):
- POST /trip-access → grant an account a role on a trip
- PATCH /trip-access/:id → change a grant's role
- DELETE /trip-access/:id → revoke a grant
- GET /trips/:trip_id/access → who has access to a trip
- GET /users → every account (to pick grantees from)
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.dependencies import CurrentIdentity, require_admin
from tripgate.db.engine import get_db
from tripgate.errors import AccountNotFound, GrantConflict, GrantNotFound, TripNotFound
from tripgate.schemas.access import (
    AccountSummary,
    GrantCreate,
    GrantRead,
    GrantUpdate,
    TripMemberRead,
)
from tripgate.services.access_service import TripAccessService

router = APIRouter()


def _svc(db: AsyncSession = Depends(get_db)) -> TripAccessService:
    return TripAccessService(db)


@router.post("/trip-access", response_model=GrantRead, status_code=201)
async def grant_access(
    body: GrantCreate,
    admin: CurrentIdentity = Depends(require_admin),
    svc: TripAccessService = Depends(_svc),
):
    try:
        return await svc.grant(body.trip_id, body.account_id, body.role, admin.account_id)
    except TripNotFound:
        raise HTTPException(status_code=404, detail="Trip not found")
    except AccountNotFound:
        raise HTTPException(status_code=404, detail="Account not found")
    except GrantConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.patch("/trip-access/{grant_id}", response_model=GrantRead)
async def update_access(
    grant_id: uuid.UUID,
    body: GrantUpdate,
    admin: CurrentIdentity = Depends(require_admin),
    svc: TripAccessService = Depends(_svc),
):
    try:
        return await svc.update_role(grant_id, body.role, admin.account_id)
    except GrantNotFound:
        raise HTTPException(status_code=404, detail="Grant not found")


@router.delete("/trip-access/{grant_id}")
async def revoke_access(
    grant_id: uuid.UUID,
    admin: CurrentIdentity = Depends(require_admin),
    svc: TripAccessService = Depends(_svc),
):
    try:
        await svc.revoke(grant_id, admin.account_id)
    except GrantNotFound:
        raise HTTPException(status_code=404, detail="Grant not found")
    return {"revoked": True}


@router.get("/trips/{trip_id}/access", response_model=list[TripMemberRead])
async def list_trip_access(
    trip_id: str,
    admin: CurrentIdentity = Depends(require_admin),
    svc: TripAccessService = Depends(_svc),
):
    """Grants on one trip (by id or slug), with each grantee's email."""
    try:
        rows = await svc.list_for_trip(trip_id)
    except TripNotFound:
        raise HTTPException(status_code=404, detail="Trip not found")
    return [
        TripMemberRead(
            **GrantRead.model_validate(grant).model_dump(),
            email=account.email,
            display_name=account.display_name,
        )
        for grant, account in rows
    ]


@router.get("/users", response_model=list[AccountSummary])
async def list_users(
    admin: CurrentIdentity = Depends(require_admin),
    svc: TripAccessService = Depends(_svc),
):
    return await svc.list_accounts()
