"""Pydantic schemas for invites.

Learn: The code is only ever shown to the admin who creates the invite
and in the admin listing; redeemers just post it back.

Statuses are derived at read time:
- 'pending': redeemable now
- 'used': redeemed (terminal)
- 'revoked': revoked by an admin (terminal)
- 'expired': past expires_at without being redeemed
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from tripgate.auth.roles import Role
from tripgate.schemas.access import GrantRead
from tripgate.services.challenge_service import normalize_email


class InviteCreate(BaseModel):
    role: Role = Role.VIEWER
    trip_ids: list[uuid.UUID] = Field(..., description="Trips the invite grants access to")
    expires_in_days: Optional[int] = Field(
        None, ge=1, le=90, description="Defaults to TRIPGATE_INVITE_TTL_DAYS"
    )
    email: Optional[str] = Field(None, description="Only this email may redeem")

    @field_validator("email")
    @classmethod
    def _email(cls, v: Optional[str]) -> Optional[str]:
        return normalize_email(v) if v else None


class InviteRedeem(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class InviteRead(BaseModel):
    id: uuid.UUID
    code: str
    email: Optional[str] = None
    role: Role
    status: str
    trip_count: int
    expires_at: datetime
    created_at: datetime
    redeemed_at: Optional[datetime] = None
    redeemed_by_account_id: Optional[uuid.UUID] = None
    revoked_at: Optional[datetime] = None


class InviteCreated(BaseModel):
    id: uuid.UUID
    code: str
    email: Optional[str] = None
    role: Role
    trip_ids: list[uuid.UUID]
    expires_at: datetime


class RedeemResult(BaseModel):
    grants: list[GrantRead]
