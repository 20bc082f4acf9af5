"""Bootstrap — the first account to register becomes the administrator.

Learn: "Is this the first account?" is a global condition, and checking
it with a SELECT followed by an UPDATE lets two concurrent registrations
both see "no one else here" and both become admin. Instead we keep one
marker row (admin_assignment, slot=1) and flip it with a single
compare-and-set:

  UPDATE admin_assignment
     SET admin_account_id = :me
   WHERE slot = 1
     AND admin_account_id IS NULL
     AND NOT EXISTS (SELECT 1 FROM accounts WHERE id != :me)

The database serializes writers on that row. Exactly one statement can
match it; everyone else updates zero rows and stays a regular user.

This runs inside the registration's unit of work, right after the account
insert, and never commits on its own: if the registration rolls back, so
does the promotion.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.db.engine import BOOTSTRAP_SLOT
from tripgate.db.models import Account, AdminAssignment
from tripgate.events.store import EventStore
from tripgate.events.types import ACCOUNT_PROMOTED_ADMIN

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Bootstrap:
    """Assigns the admin flag to exactly one account, ever."""

    def __init__(
        self,
        db: AsyncSession,
        events: EventStore | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.events = events or EventStore(db)
        self._now = now

    async def maybe_promote_to_admin(self, account: Account) -> bool:
        """Promote `account` if it's the first one. Returns True if promoted.

        Call once, immediately after the account's INSERT has been flushed.
        """
        others = exists().where(Account.id != account.id)
        result = await self.db.execute(
            update(AdminAssignment)
            .where(
                AdminAssignment.slot == BOOTSTRAP_SLOT,
                AdminAssignment.admin_account_id.is_(None),
                ~others,
            )
            .values(admin_account_id=account.id, assigned_at=self._now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        account.is_admin = True
        await self.db.flush()
        await self.events.append(
            stream_id=f"account:{account.id}",
            event_type=ACCOUNT_PROMOTED_ADMIN,
            data={"email": account.email, "reason": "first_account"},
        )
        logger.info("bootstrap.admin_assigned", account_id=str(account.id))
        return True

    async def admin_account_id(self) -> uuid.UUID | None:
        """Who won the bootstrap, or None while registration is still open."""
        result = await self.db.execute(
            select(AdminAssignment.admin_account_id).where(
                AdminAssignment.slot == BOOTSTRAP_SLOT
            )
        )
        return result.scalar_one_or_none()
