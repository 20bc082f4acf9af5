"""Challenge manager — one-time nonces for passkey ceremonies.

Learn: Each ceremony attempt gets its own Challenge row:

  begin_*  → INSERT challenge (random nonce, purpose, short TTL)
  consume  → DELETE ... WHERE id = :id, committed immediately

consume() is the single-use gate. Whoever's DELETE removes the row owns
the challenge; a concurrent second consumer sees rowcount=0 and fails
with ChallengeNotFound. The delete is committed before any verification
runs, so a failed verification still burns the challenge.

Expired rows are never trusted (consume checks expiry) and are swept
lazily on every begin_* plus periodically by ChallengeSweeper.
"""

import asyncio
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tripgate.auth import webauthn
from tripgate.config import settings
from tripgate.db.models import Account, Challenge, Credential
from tripgate.errors import (
    AccountNotFound,
    ChallengeExpired,
    ChallengeNotFound,
    DuplicateAccount,
)

logger = structlog.get_logger()

REGISTRATION = "registration"
AUTHENTICATION = "authentication"
CREDENTIAL_ADDITION = "credential_addition"

NONCE_BYTES = 32
USER_HANDLE_BYTES = 32

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_DISPLAY_NAME = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Trim + lowercase. Raises ValueError if it isn't email-shaped."""
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email) or len(email) > 255:
        raise ValueError("Invalid email address")
    return email


def normalize_display_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    name = name.strip()[:MAX_DISPLAY_NAME]
    return name or None


@dataclass(frozen=True)
class IssuedChallenge:
    """A stored challenge plus the options the browser needs."""

    challenge: Challenge
    options: dict

    @property
    def challenge_id(self) -> uuid.UUID:
        return self.challenge.id


class ChallengeManager:
    """Issues and atomically consumes ceremony challenges."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        ttl_seconds: Optional[int] = None,
        rp_id: Optional[str] = None,
        rp_name: Optional[str] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds or settings.challenge_ttl_seconds)
        self.rp_id = rp_id or settings.rp_id
        self.rp_name = rp_name or settings.rp_name
        self._now = now

    @property
    def _timeout_ms(self) -> int:
        return int(self.ttl.total_seconds() * 1000)

    # ─── Begin ──────────────────────────────────────────

    async def begin_registration(
        self, email: str, display_name: Optional[str] = None
    ) -> IssuedChallenge:
        """Start registering a new account for `email`.

        Raises DuplicateAccount if the email is taken. The user handle
        generated here is what the new account will carry.

        Learn: An account left with no passkeys (after recovery) can register
        again under its own email. The challenge then points at that account
        and reuses its user handle, so the new passkey lands on the same
        identity instead of a fresh one.
        """
        email = normalize_email(email)
        display_name = normalize_display_name(display_name)
        existing = (
            await self.db.execute(select(Account).where(Account.email == email))
        ).scalars().first()

        account_id = None
        if existing is None:
            user_handle = webauthn.b64url_encode(secrets.token_bytes(USER_HANDLE_BYTES))
        elif await self._credentials_of(existing.id):
            raise DuplicateAccount(f"Email {email} is already registered")
        else:
            account_id = existing.id
            user_handle = existing.user_handle
            display_name = display_name or existing.display_name

        challenge = await self._store(
            REGISTRATION,
            email=email,
            account_id=account_id,
            user_handle=user_handle,
            display_name=display_name,
        )
        options = webauthn.registration_options(
            challenge=challenge.nonce,
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_handle=user_handle,
            user_name=email,
            display_name=display_name or email,
            timeout_ms=self._timeout_ms,
        )
        return IssuedChallenge(challenge, options)

    async def begin_authentication(self, email: str) -> IssuedChallenge:
        """Start a login for `email`.

        Raises AccountNotFound for unknown emails and for accounts with no
        passkeys — callers must not reveal which.
        """
        try:
            email = normalize_email(email)
        except ValueError as e:
            raise AccountNotFound("No account for email") from e
        account = (
            await self.db.execute(select(Account).where(Account.email == email))
        ).scalars().first()
        if account is None:
            raise AccountNotFound("No account for email")

        credentials = await self._credentials_of(account.id)
        if not credentials:
            raise AccountNotFound("Account has no credentials")

        challenge = await self._store(AUTHENTICATION, account_id=account.id)
        options = webauthn.authentication_options(
            challenge=challenge.nonce,
            rp_id=self.rp_id,
            allow_credentials=[
                webauthn.credential_descriptor(c.credential_id, c.transports)
                for c in credentials
            ],
            timeout_ms=self._timeout_ms,
        )
        return IssuedChallenge(challenge, options)

    async def begin_credential_addition(self, account_id: uuid.UUID) -> IssuedChallenge:
        """Start registering an additional passkey for a signed-in account."""
        account = await self.db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")

        credentials = await self._credentials_of(account.id)
        challenge = await self._store(
            CREDENTIAL_ADDITION,
            account_id=account.id,
            user_handle=account.user_handle,
        )
        options = webauthn.registration_options(
            challenge=challenge.nonce,
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_handle=account.user_handle,
            user_name=account.email,
            display_name=account.display_name or account.email,
            timeout_ms=self._timeout_ms,
            exclude_credentials=[
                webauthn.credential_descriptor(c.credential_id, c.transports)
                for c in credentials
            ],
        )
        return IssuedChallenge(challenge, options)

    # ─── Consume ────────────────────────────────────────

    async def consume(self, challenge_id: uuid.UUID, purpose: str) -> Challenge:
        """Atomically take a challenge out of the store.

        The row is gone after this call no matter what is raised below,
        so a second attempt on the same id always gets ChallengeNotFound.
        """
        challenge = await self.db.get(Challenge, challenge_id)
        if challenge is None:
            raise ChallengeNotFound("Challenge not found")

        result = await self.db.execute(
            delete(Challenge)
            .where(Challenge.id == challenge_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        self.db.expunge(challenge)

        if result.rowcount != 1:
            # Lost the race to a concurrent consumer.
            raise ChallengeNotFound("Challenge already consumed")
        if self._now() >= challenge.expires_at:
            raise ChallengeExpired("Challenge expired")
        if challenge.purpose != purpose:
            raise ChallengeNotFound("Challenge issued for a different ceremony")
        return challenge

    # ─── Sweeping ───────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Delete every expired challenge. Returns how many were removed."""
        result = await self.db.execute(
            delete(Challenge)
            .where(Challenge.expires_at <= self._now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def pending_count(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(Challenge))
        return result.scalar_one()

    # ─── Internals ──────────────────────────────────────

    async def _store(self, purpose: str, **fields) -> Challenge:
        await self.sweep_expired()
        now = self._now()
        challenge = Challenge(
            nonce=webauthn.b64url_encode(secrets.token_bytes(NONCE_BYTES)),
            purpose=purpose,
            expires_at=now + self.ttl,
            created_at=now,
            **fields,
        )
        self.db.add(challenge)
        await self.db.commit()
        return challenge

    async def _credentials_of(self, account_id: uuid.UUID) -> list[Credential]:
        result = await self.db.execute(
            select(Credential)
            .where(Credential.account_id == account_id)
            .order_by(Credential.created_at)
        )
        return list(result.scalars().all())


class ChallengeSweeper:
    """Background loop that evicts expired challenges.

    Learn: Runs as a long-lived task in the FastAPI lifespan. Purely
    housekeeping — an expired-but-unswept challenge already fails
    consume(), so a stopped sweeper never weakens anything.

    Usage:
        sweeper = ChallengeSweeper(async_session_factory)
        asyncio.create_task(sweeper.run_loop())
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        poll_interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.poll_interval = poll_interval or settings.challenge_sweep_interval_seconds
        self._running = False

    async def run_loop(self) -> None:
        """Main loop — sweep, sleep, repeat."""
        self._running = True
        logger.info("challenge_sweeper.started", poll_interval=self.poll_interval)

        while self._running:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("challenge_sweeper.error")
            await asyncio.sleep(self.poll_interval)

    async def sweep_once(self) -> int:
        async with self.session_factory() as db:
            removed = await ChallengeManager(db).sweep_expired()
        if removed:
            logger.info("challenge_sweeper.swept", removed=removed)
        return removed

    def stop(self) -> None:
        """Signal the sweeper to stop."""
        self._running = False
        logger.info("challenge_sweeper.stopping")
