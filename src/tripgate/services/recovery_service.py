"""Account recovery — clear a lost account's passkeys with a one-time code.

Learn: Someone who lost their only device can't sign in, and the last
passkey can never be deleted from inside a session. Recovery is the way
out:

  request(email) → new 6-digit code (10 min), sent to the operator
  verify(email, code) → wrong code: attempts += 1, lock at the limit
                        right code: UPDATE ... SET used_at WHERE unused
                                    + DELETE the account's credentials
                                    + event → COMMIT

After that the account has no passkeys, so register/options accepts its
email again and the new passkey is attached to the same account (same
id, grants and admin flag).

Both writes on the verify path are conditional UPDATEs in the style of
invite redemption: a token that changed between the read and the write
matches zero rows and the caller loses. request() answers the same way
whether or not the email exists.
"""

import asyncio
import random
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.config import settings
from tripgate.db.models import Account, Credential, RecoveryToken
from tripgate.errors import RecoveryCodeInvalid, RecoveryLocked
from tripgate.events.store import EventStore
from tripgate.events.types import ACCOUNT_RECOVERED, ACCOUNT_RECOVERY_REQUESTED
from tripgate.services.challenge_service import normalize_email
from tripgate.services.notifier import Notifier, default_notifier

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _jitter() -> None:
    """Blur the timing difference between known and unknown emails."""
    await asyncio.sleep(random.uniform(0.05, 0.15))


def generate_code() -> str:
    return f"{secrets.randbelow(900_000) + 100_000}"


class RecoveryService:
    """Issues and checks account recovery codes."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        notifier: Optional[Notifier] = None,
        events: Optional[EventStore] = None,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        now: Callable[[], datetime] = _utcnow,
        pause: Callable[[], Awaitable[None]] = _jitter,
    ):
        self.db = db
        self.notifier = notifier or default_notifier()
        self.events = events or EventStore(db)
        self.ttl = timedelta(minutes=ttl_minutes or settings.recovery_ttl_minutes)
        self.max_attempts = max_attempts or settings.recovery_max_attempts
        self._now = now
        self._pause = pause

    # ─── Request ────────────────────────────────────────

    async def request(self, email: str) -> None:
        """Issue a fresh code if `email` has an account. Silent either way."""
        code = generate_code()
        now = self._now()
        expires_at = now + self.ttl

        try:
            email = normalize_email(email)
        except ValueError:
            account = None
        else:
            account = (
                await self.db.execute(select(Account).where(Account.email == email))
            ).scalars().first()

        if account is not None:
            # One unused token per account; a new code also replaces a locked one.
            await self.db.execute(
                delete(RecoveryToken)
                .where(
                    RecoveryToken.account_id == account.id,
                    RecoveryToken.used_at.is_(None),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.add(RecoveryToken(
                account_id=account.id, code=code, expires_at=expires_at, created_at=now,
            ))
            await self.events.append(
                stream_id=f"account:{account.id}",
                event_type=ACCOUNT_RECOVERY_REQUESTED,
                data={"expires_at": expires_at.isoformat()},
            )
            await self.db.commit()

            sent = await self.notifier.send(
                f"🔐 <b>Recovery Code</b>\n\nAccount: {account.email}\n"
                f"Code: <code>{code}</code>\n\nExpires at: {expires_at.isoformat()}"
            )
            logger.info("recovery.requested", account_id=str(account.id), delivered=sent)

        await self._pause()

    # ─── Verify ─────────────────────────────────────────

    async def verify(self, email: str, code: str) -> uuid.UUID:
        """Check `code` and, if right, delete every passkey of the account.

        Returns the account id. Raises RecoveryCodeInvalid (with the
        remaining attempts when a live token exists) or RecoveryLocked.
        """
        try:
            email = normalize_email(email)
        except ValueError as e:
            raise RecoveryCodeInvalid("Invalid or expired code") from e

        now = self._now()
        result = await self.db.execute(
            select(RecoveryToken)
            .join(Account, Account.id == RecoveryToken.account_id)
            .where(
                Account.email == email,
                RecoveryToken.used_at.is_(None),
                RecoveryToken.expires_at > now,
            )
            .order_by(RecoveryToken.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        token = result.scalars().first()
        if token is None:
            raise RecoveryCodeInvalid("Invalid or expired code")
        if token.locked_at is not None:
            raise RecoveryLocked("Too many failed attempts. Please request a new recovery code.")

        token_id, account_id = token.id, token.account_id
        live = (
            RecoveryToken.id == token_id,
            RecoveryToken.used_at.is_(None),
            RecoveryToken.locked_at.is_(None),
            RecoveryToken.expires_at > now,
        )

        if not secrets.compare_digest(token.code.encode(), code.strip().encode()):
            await self._record_miss(token.attempts, live, now)
            raise await self._miss_error(token_id)

        claimed = await self.db.execute(
            update(RecoveryToken)
            .where(*live)
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            raise RecoveryCodeInvalid("Invalid or expired code")

        try:
            removed = await self.db.execute(
                delete(Credential)
                .where(Credential.account_id == account_id)
                .execution_options(synchronize_session=False)
            )
            await self.events.append(
                stream_id=f"account:{account_id}",
                event_type=ACCOUNT_RECOVERED,
                data={"credentials_removed": removed.rowcount or 0},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "recovery.completed",
            account_id=str(account_id),
            credentials_removed=removed.rowcount or 0,
        )
        await self.notifier.send(f"✅ Recovery successful for {email}. Passkeys cleared.")
        return account_id

    # ─── Internals ──────────────────────────────────────

    async def _record_miss(
        self, seen_attempts: int, live: tuple, now: datetime
    ) -> None:
        """attempts += 1, locking the token at the limit.

        Guarded on the attempt count we read, so two concurrent wrong
        guesses can't both write the same count; the loser retries.
        """
        while True:
            attempts = seen_attempts + 1
            bumped = await self.db.execute(
                update(RecoveryToken)
                .where(*live, RecoveryToken.attempts == seen_attempts)
                .values(
                    attempts=attempts,
                    locked_at=now if attempts >= self.max_attempts else None,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if bumped.rowcount == 1:
                return
            current = (
                await self.db.execute(select(RecoveryToken.attempts).where(*live))
            ).scalar_one_or_none()
            if current is None:
                # Locked, used or expired meanwhile.
                return
            seen_attempts = current

    async def _miss_error(self, token_id: uuid.UUID) -> Exception:
        row = (
            await self.db.execute(
                select(RecoveryToken.attempts, RecoveryToken.locked_at).where(
                    RecoveryToken.id == token_id
                )
            )
        ).first()
        if row is None:
            return RecoveryCodeInvalid("Invalid or expired code")
        logger.warning("recovery.wrong_code", token_id=str(token_id), attempts=row.attempts)
        if row.locked_at is not None:
            return RecoveryLocked("Too many failed attempts. Please request a new recovery code.")
        remaining = max(0, self.max_attempts - row.attempts)
        return RecoveryCodeInvalid(
            f"Invalid code. {remaining} attempts remaining.", remaining_attempts=remaining
        )
