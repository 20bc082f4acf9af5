"""Access resolution + trip grant management.

Learn: Two classes with very different contracts live here.

AccessResolver answers one question on every request — "may this
session act on this trip at this role?" — and never writes anything:

  1. admin flag in the session claims → yes, no lookup at all
  2. no TripGrant for (account, trip)  → no
  3. grant role satisfies min_role     → yes (editor ⊇ viewer)

TripAccessService is the admin side: create, change, revoke and list
grants. Invite redemption reuses its upsert so there is one code path
that ever writes a TripGrant.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.jwt import SessionClaims
from tripgate.auth.roles import Role
from tripgate.db.models import Account, Trip, TripGrant
from tripgate.errors import (
    AccessDenied,
    AccountNotFound,
    GrantConflict,
    GrantNotFound,
    TripNotFound,
)
from tripgate.events.store import EventStore
from tripgate.events.types import (
    TRIP_GRANT_CREATED,
    TRIP_GRANT_REVOKED,
    TRIP_GRANT_UPDATED,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def resolve_trip(db: AsyncSession, trip_ref: uuid.UUID | str) -> Trip:
    """Find a trip by id or slug. Raises TripNotFound."""
    if isinstance(trip_ref, uuid.UUID):
        trip = await db.get(Trip, trip_ref)
    else:
        try:
            trip = await db.get(Trip, uuid.UUID(trip_ref))
        except ValueError:
            result = await db.execute(select(Trip).where(Trip.slug == trip_ref))
            trip = result.scalars().first()
    if trip is None:
        raise TripNotFound(f"Trip {trip_ref} not found")
    return trip


class AccessResolver:
    """Side-effect-free authorization checks."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def role_for(self, account_id: uuid.UUID, trip_id: uuid.UUID) -> Role | None:
        result = await self.db.execute(
            select(TripGrant.role).where(
                TripGrant.account_id == account_id,
                TripGrant.trip_id == trip_id,
            )
        )
        return result.scalar_one_or_none()

    async def check_access(
        self, claims: SessionClaims, trip_id: uuid.UUID, min_role: Role | str
    ) -> bool:
        if claims.is_admin:
            return True
        role = await self.role_for(claims.account_id, trip_id)
        if role is None:
            return False
        return role.satisfies(min_role)

    async def require(
        self, claims: SessionClaims, trip_id: uuid.UUID, min_role: Role | str
    ) -> None:
        """check_access, but raises AccessDenied instead of returning False."""
        if not await self.check_access(claims, trip_id, min_role):
            raise AccessDenied(f"{Role(min_role).value} access required on trip {trip_id}")


class TripAccessService:
    """Admin-side grant management."""

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventStore] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.events = events or EventStore(db)
        self._now = now

    # ─── Writes ─────────────────────────────────────────

    async def grant(
        self,
        trip_id: uuid.UUID,
        account_id: uuid.UUID,
        role: Role,
        granted_by: uuid.UUID | None = None,
    ) -> TripGrant:
        """Create a new grant. Raises GrantConflict if one already exists.

        Admins can't be granted anything: they already see every trip,
        and a grant row would suggest otherwise.
        """
        trip = await resolve_trip(self.db, trip_id)
        account = await self.db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if account.is_admin:
            raise GrantConflict("Admins have access to every trip")

        existing = await self._find(account_id, trip.id)
        if existing is not None:
            raise GrantConflict("Account already has access to this trip")

        grant = TripGrant(
            account_id=account_id,
            trip_id=trip.id,
            role=Role(role),
            granted_at=self._now(),
            granted_by_account_id=granted_by,
        )
        self.db.add(grant)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise GrantConflict("Account already has access to this trip") from e

        await self._record(TRIP_GRANT_CREATED, grant, granted_by)
        await self.db.commit()
        return grant

    async def upsert_grant(
        self,
        account_id: uuid.UUID,
        trip_id: uuid.UUID,
        role: Role,
        granted_by: uuid.UUID | None = None,
    ) -> TripGrant:
        """Insert or upgrade a grant (flushes, does not commit).

        Learn: Upgrade-only. A viewer grant becomes editor; an existing
        editor grant is left alone when the incoming role is viewer.
        Runs inside the caller's transaction (invite redemption).
        """
        role = Role(role)
        grant = await self._find(account_id, trip_id)
        if grant is None:
            grant = TripGrant(
                account_id=account_id,
                trip_id=trip_id,
                role=role,
                granted_at=self._now(),
                granted_by_account_id=granted_by,
            )
            self.db.add(grant)
            await self.db.flush()
            await self._record(TRIP_GRANT_CREATED, grant, granted_by)
        elif role.rank > grant.role.rank:
            previous = grant.role
            grant.role = role
            grant.granted_at = self._now()
            grant.granted_by_account_id = granted_by
            await self.db.flush()
            await self._record(
                TRIP_GRANT_UPDATED, grant, granted_by, previous_role=previous.value
            )
        return grant

    async def update_role(
        self, grant_id: uuid.UUID, role: Role, actor_id: uuid.UUID | None = None
    ) -> TripGrant:
        """Set a grant's role outright (up or down)."""
        grant = await self.db.get(TripGrant, grant_id)
        if grant is None:
            raise GrantNotFound(f"Grant {grant_id} not found")

        previous = grant.role
        grant.role = Role(role)
        await self._record(
            TRIP_GRANT_UPDATED, grant, actor_id, previous_role=previous.value
        )
        await self.db.commit()
        return grant

    async def revoke(self, grant_id: uuid.UUID, actor_id: uuid.UUID | None = None) -> None:
        grant = await self.db.get(TripGrant, grant_id)
        if grant is None:
            raise GrantNotFound(f"Grant {grant_id} not found")

        await self._record(TRIP_GRANT_REVOKED, grant, actor_id)
        await self.db.delete(grant)
        await self.db.commit()

    # ─── Reads ──────────────────────────────────────────

    async def list_for_trip(self, trip_ref: uuid.UUID | str) -> list[tuple[TripGrant, Account]]:
        """A trip's grants with the grantee's account, oldest first."""
        trip = await resolve_trip(self.db, trip_ref)
        result = await self.db.execute(
            select(TripGrant, Account)
            .join(Account, Account.id == TripGrant.account_id)
            .where(TripGrant.trip_id == trip.id)
            .order_by(TripGrant.granted_at)
        )
        return [(grant, account) for grant, account in result.all()]

    async def list_accounts(self) -> list[Account]:
        result = await self.db.execute(select(Account).order_by(Account.created_at))
        return list(result.scalars().all())

    # ─── Internals ──────────────────────────────────────

    async def _find(self, account_id: uuid.UUID, trip_id: uuid.UUID) -> TripGrant | None:
        result = await self.db.execute(
            select(TripGrant).where(
                TripGrant.account_id == account_id,
                TripGrant.trip_id == trip_id,
            )
        )
        return result.scalars().first()

    async def _record(
        self,
        event_type: str,
        grant: TripGrant,
        actor_id: uuid.UUID | None,
        **extra,
    ) -> None:
        await self.events.append(
            stream_id=f"trip:{grant.trip_id}",
            event_type=event_type,
            data={
                "grant_id": str(grant.id),
                "account_id": str(grant.account_id),
                "role": grant.role.value,
                **extra,
            },
            metadata={"actor_id": str(actor_id)} if actor_id else None,
        )
        logger.info(event_type, trip_id=str(grant.trip_id), account_id=str(grant.account_id))
