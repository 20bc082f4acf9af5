"""Invite API — admins hand out codes, signed-in users redeem them.

Learn: Routes for the invite lifecycle:
- POST /invites → admin creates an invite (code returned)
- GET /invites → admin lists invites with derived status
- DELETE /invites/:id → admin revokes a pending invite
- POST /invites/redeem → any signed-in account redeems a code

Unknown, expired and wrong-email codes all get the same 404, so trying
a code tells you nothing about whether it was ever valid.
"""

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.dependencies import CurrentIdentity, get_current_user, require_admin
from tripgate.db.engine import get_db
from tripgate.errors import (
    AccountNotFound,
    EmptyTripSet,
    InviteAlreadyUsed,
    InviteConflict,
    InviteEmailMismatch,
    InviteExpired,
    InviteNotFound,
    InviteNotRevocable,
    TripNotFound,
)
from tripgate.schemas.access import GrantRead
from tripgate.schemas.invite import (
    InviteCreate,
    InviteCreated,
    InviteRead,
    InviteRedeem,
    RedeemResult,
)
from tripgate.services.invite_service import InviteLedger

router = APIRouter()

INVALID_INVITE = "Invalid or expired invite"


def _svc(db: AsyncSession = Depends(get_db)) -> InviteLedger:
    return InviteLedger(db)


# ─── Admin ───────────────────────────────────────────────


@router.post("/invites", response_model=InviteCreated, status_code=201)
async def create_invite(
    body: InviteCreate,
    admin: CurrentIdentity = Depends(require_admin),
    svc: InviteLedger = Depends(_svc),
):
    """Create an invite over one or more trips."""
    ttl = timedelta(days=body.expires_in_days) if body.expires_in_days else None
    try:
        invite = await svc.create_invite(
            admin.account_id, body.role, body.trip_ids, ttl=ttl, email=body.email
        )
    except EmptyTripSet as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InviteConflict as e:
        raise HTTPException(status_code=409, detail=str(e))

    return InviteCreated(
        id=invite.id,
        code=invite.code,
        email=invite.email,
        role=invite.role,
        trip_ids=list(dict.fromkeys(body.trip_ids)),
        expires_at=invite.expires_at,
    )


@router.get("/invites", response_model=list[InviteRead])
async def list_invites(
    admin: CurrentIdentity = Depends(require_admin),
    svc: InviteLedger = Depends(_svc),
):
    return [
        InviteRead(
            id=invite.id,
            code=invite.code,
            email=invite.email,
            role=invite.role,
            status=status,
            trip_count=trip_count,
            expires_at=invite.expires_at,
            created_at=invite.created_at,
            redeemed_at=invite.redeemed_at,
            redeemed_by_account_id=invite.redeemed_by_account_id,
            revoked_at=invite.revoked_at,
        )
        for invite, trip_count, status in await svc.list_invites()
    ]


@router.delete("/invites/{invite_id}")
async def revoke_invite(
    invite_id: uuid.UUID,
    admin: CurrentIdentity = Depends(require_admin),
    svc: InviteLedger = Depends(_svc),
):
    """Revoke a pending invite. Used or expired invites can't be revoked."""
    try:
        await svc.revoke(invite_id, actor_id=admin.account_id)
    except InviteNotFound:
        raise HTTPException(status_code=404, detail="Invite not found")
    except InviteNotRevocable as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"revoked": True}


# ─── Redeem ──────────────────────────────────────────────


@router.post("/invites/redeem", response_model=RedeemResult)
async def redeem_invite(
    body: InviteRedeem,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: InviteLedger = Depends(_svc),
):
    """Turn an invite code into trip grants for the signed-in account."""
    try:
        grants = await svc.redeem(body.code.strip(), identity.account_id)
    except (InviteNotFound, InviteExpired, InviteEmailMismatch):
        raise HTTPException(status_code=404, detail=INVALID_INVITE)
    except InviteAlreadyUsed:
        raise HTTPException(status_code=409, detail="Invite has already been used")
    except AccountNotFound:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return RedeemResult(grants=[GrantRead.model_validate(g) for g in grants])
