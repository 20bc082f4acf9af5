"""Invite ledger — codes that turn into trip grants, exactly once.

Learn: An invite is a capability: whoever redeems the code gets the
invite's role on each of its trips. The whole redemption is ONE
transaction:

  1. UPDATE invites SET redeemed_at=:now, redeemed_by=:me
      WHERE id=:id AND redeemed_at IS NULL AND revoked_at IS NULL
        AND expires_at > :now                      -- the only gate
  2. upsert one TripGrant per invite trip           -- same transaction
  3. COMMIT

Concurrent redeemers all race at step 1; the database lets exactly one
UPDATE match, the rest see rowcount=0 and get InviteAlreadyUsed. If
anything in step 2 fails we roll back, and the invite is unredeemed
again. There is no half-applied state to repair.

States are derived, never stored: pending → used (terminal),
pending → revoked (terminal), pending → expired (by the clock).
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.roles import Role
from tripgate.config import settings
from tripgate.db.models import Account, Invite, InviteTrip, Trip, TripGrant
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
from tripgate.events.store import EventStore
from tripgate.events.types import INVITE_CREATED, INVITE_REDEEMED, INVITE_REVOKED
from tripgate.services.access_service import TripAccessService
from tripgate.services.challenge_service import normalize_email

logger = structlog.get_logger()

CODE_BYTES = 24  # 192 bits → 32 url-safe chars


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InviteLedger:
    """Creates, redeems, lists and revokes invites."""

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventStore] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.events = events or EventStore(db)
        self._now = now
        self.access = TripAccessService(db, self.events, now=now)

    def _pending(self, now: datetime):
        """WHERE clause for invites that can still be redeemed."""
        return (
            Invite.redeemed_at.is_(None),
            Invite.revoked_at.is_(None),
            Invite.expires_at > now,
        )

    # ─── Create ─────────────────────────────────────────

    async def create_invite(
        self,
        creator_id: uuid.UUID | None,
        role: Role,
        trip_ids: list[uuid.UUID],
        ttl: Optional[timedelta] = None,
        email: Optional[str] = None,
    ) -> Invite:
        """Create an invite over a fixed set of trips.

        Raises EmptyTripSet, TripNotFound (any unknown trip), or
        InviteConflict (a pending invite already targets this email).
        """
        unique_ids = list(dict.fromkeys(trip_ids))
        if not unique_ids:
            raise EmptyTripSet("Invite must include at least one trip")

        found = await self.db.execute(select(Trip.id).where(Trip.id.in_(unique_ids)))
        missing = set(unique_ids) - set(found.scalars().all())
        if missing:
            raise TripNotFound(f"Trips not found: {sorted(str(t) for t in missing)}")

        now = self._now()
        if email:
            email = normalize_email(email)
            pending = await self.db.execute(
                select(Invite.id).where(Invite.email == email, *self._pending(now))
            )
            if pending.first() is not None:
                raise InviteConflict(f"A pending invite already exists for {email}")

        invite = Invite(
            code=secrets.token_urlsafe(CODE_BYTES),
            created_by_account_id=creator_id,
            email=email or None,
            role=Role(role),
            expires_at=now + (ttl or timedelta(days=settings.invite_ttl_days)),
            created_at=now,
        )
        self.db.add(invite)
        await self.db.flush()
        for trip_id in unique_ids:
            self.db.add(InviteTrip(invite_id=invite.id, trip_id=trip_id))

        await self.events.append(
            stream_id=f"invite:{invite.id}",
            event_type=INVITE_CREATED,
            data={
                "role": invite.role.value,
                "trip_ids": [str(t) for t in unique_ids],
                "email": invite.email,
                "expires_at": invite.expires_at.isoformat(),
            },
            metadata={"actor_id": str(creator_id)} if creator_id else None,
        )
        await self.db.commit()
        logger.info("invite.created", invite_id=str(invite.id), trips=len(unique_ids))
        return invite

    # ─── Redeem ─────────────────────────────────────────

    async def redeem(self, code: str, account_id: uuid.UUID) -> list[TripGrant]:
        """Redeem `code` for `account_id`. Returns the account's grants;
        an admin consumes the invite but gets none written.

        Failure kinds, in check order: InviteNotFound, InviteExpired,
        InviteAlreadyUsed, InviteEmailMismatch. Losing a concurrent race
        is always InviteAlreadyUsed.
        """
        result = await self.db.execute(
            select(Invite)
            .where(Invite.code == code)
            .execution_options(populate_existing=True)
        )
        invite = result.scalars().first()
        if invite is None:
            raise InviteNotFound("Invite not found")

        now = self._now()
        if now >= invite.expires_at:
            raise InviteExpired("Invite has expired")
        if invite.redeemed_at is not None or invite.revoked_at is not None:
            raise InviteAlreadyUsed("Invite has already been used")

        account = await self.db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if invite.email and account.email != invite.email:
            raise InviteEmailMismatch("Invite is bound to a different email")

        trip_rows = await self.db.execute(
            select(InviteTrip.trip_id).where(InviteTrip.invite_id == invite.id)
        )
        trip_ids = list(trip_rows.scalars().all())
        invite_id = invite.id
        role = invite.role
        granted_by = invite.created_by_account_id
        # Admins already see every trip; the invite is still consumed.
        skip_grants = account.is_admin

        claimed = await self.db.execute(
            update(Invite)
            .where(Invite.id == invite_id, *self._pending(now))
            .values(redeemed_at=now, redeemed_by_account_id=account_id)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            logger.info("invite.redeem_lost_race", invite_id=str(invite_id))
            raise InviteAlreadyUsed("Invite has already been used")

        try:
            grants = [] if skip_grants else [
                await self.access.upsert_grant(account_id, trip_id, role, granted_by)
                for trip_id in trip_ids
            ]
            await self.events.append(
                stream_id=f"invite:{invite_id}",
                event_type=INVITE_REDEEMED,
                data={
                    "account_id": str(account_id),
                    "role": role.value,
                    "trip_ids": [str(t) for t in trip_ids],
                    "grants_skipped": skip_grants,
                },
                metadata={"actor_id": str(account_id)},
            )
            await self.db.commit()
        except Exception:
            # Transition and grants go back together.
            await self.db.rollback()
            logger.exception("invite.redeem_failed", invite_id=str(invite_id))
            raise

        logger.info(
            "invite.redeemed",
            invite_id=str(invite_id),
            account_id=str(account_id),
            grants=len(grants),
        )
        return grants

    # ─── Admin views ────────────────────────────────────

    async def list_invites(self) -> list[tuple[Invite, int, str]]:
        """Every invite, newest first, with trip count and derived status."""
        trip_count = (
            select(func.count(InviteTrip.id))
            .where(InviteTrip.invite_id == Invite.id)
            .correlate(Invite)
            .scalar_subquery()
        )
        result = await self.db.execute(
            select(Invite, trip_count)
            .order_by(Invite.created_at.desc())
            .execution_options(populate_existing=True)
        )
        now = self._now()
        return [(invite, count, invite.status_at(now)) for invite, count in result.all()]

    async def get(self, invite_id: uuid.UUID) -> Invite:
        # Redemption and revocation write through bulk UPDATEs; reload.
        invite = await self.db.get(Invite, invite_id, populate_existing=True)
        if invite is None:
            raise InviteNotFound(f"Invite {invite_id} not found")
        return invite

    async def revoke(self, invite_id: uuid.UUID, actor_id: uuid.UUID | None = None) -> Invite:
        """Revoke a pending invite. Used, expired or revoked ones can't be."""
        invite = await self.get(invite_id)
        now = self._now()
        status = invite.status_at(now)
        result = await self.db.execute(
            update(Invite)
            .where(Invite.id == invite_id, *self._pending(now))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InviteNotRevocable(f"Invite is {status}")

        await self.events.append(
            stream_id=f"invite:{invite_id}",
            event_type=INVITE_REVOKED,
            data={"email": invite.email, "role": invite.role.value},
            metadata={"actor_id": str(actor_id)} if actor_id else None,
        )
        await self.db.commit()
        await self.db.refresh(invite)
        logger.info("invite.revoked", invite_id=str(invite_id))
        return invite
