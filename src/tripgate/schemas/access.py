"""Pydantic schemas for trips and trip grants."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from tripgate.auth.roles import Role
from tripgate.services.trip_service import validate_slug


# ─── Trips ──────────────────────────────────────────────


class TripCreate(BaseModel):
    slug: str = Field(..., description="URL name, e.g. 'iceland-2024'")
    title: str = Field(..., min_length=1, max_length=200)

    @field_validator("slug")
    @classmethod
    def _slug(cls, v: str) -> str:
        return validate_slug(v)


class TripRead(BaseModel):
    id: uuid.UUID
    slug: str
    title: str
    created_at: datetime
    role: Optional[Role] = Field(None, description="Caller's role; None for admins")

    model_config = {"from_attributes": True}


# ─── Grants ─────────────────────────────────────────────


class GrantCreate(BaseModel):
    account_id: uuid.UUID
    trip_id: uuid.UUID
    role: Role = Role.VIEWER


class GrantUpdate(BaseModel):
    role: Role


class GrantRead(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    trip_id: uuid.UUID
    role: Role
    granted_at: datetime
    granted_by_account_id: Optional[uuid.UUID] = None

    model_config = {"from_attributes": True}


class TripMemberRead(GrantRead):
    """A grant on one trip, with who holds it."""
    email: str
    display_name: Optional[str] = None


class AccountSummary(BaseModel):
    id: uuid.UUID
    email: str
    display_name: Optional[str] = None
    is_admin: bool
    created_at: datetime

    model_config = {"from_attributes": True}
