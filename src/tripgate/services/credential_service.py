"""Credential registry — passkeys bound to accounts, with anti-replay counters.

Learn: A credential is (globally unique id, public key, signature counter).
Authenticators bump their counter on every use; if we ever see a counter
that didn't go up, someone is replaying an old assertion or using a
cloned key. The check-and-advance is one conditional UPDATE:

  UPDATE credentials SET sign_count = :presented
  WHERE credential_id = :id
    AND (sign_count < :presented OR (sign_count = 0 AND :presented = 0))

Two concurrent assertions can't both advance past the same stored value;
the loser matches zero rows and gets CounterReplay, with nothing written.

Authenticators that always report 0 (most platform passkeys) are let
through by the second clause. They get no clone detection at all.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.orm.attributes import set_committed_value

from tripgate.auth import webauthn
from tripgate.config import settings
from tripgate.db.models import Credential
from tripgate.errors import (
    CounterReplay,
    CredentialNotFound,
    DuplicateCredential,
    LastCredential,
)
from tripgate.events.store import EventStore
from tripgate.events.types import CREDENTIAL_ADDED, CREDENTIAL_REMOVED

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialRegistry:
    """Stores passkeys and verifies assertions against them."""

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventStore] = None,
        *,
        rp_id: Optional[str] = None,
        origin: Optional[str] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.events = events or EventStore(db)
        self.rp_id = rp_id or settings.rp_id
        self.origin = origin or settings.rp_origin
        self._now = now

    # ─── Registration ───────────────────────────────────

    async def register_credential(
        self,
        account_id: uuid.UUID,
        credential_id: str,
        public_key: bytes,
        initial_counter: int = 0,
        transports: Optional[list[str]] = None,
    ) -> Credential:
        """Bind a new credential to an account (flushes, does not commit).

        Runs inside the caller's unit of work so that a brand-new account
        and its first credential appear together or not at all.
        Raises DuplicateCredential if the id exists on ANY account.
        """
        webauthn.load_public_key(public_key)

        existing = await self.db.execute(
            select(Credential.id).where(Credential.credential_id == credential_id)
        )
        if existing.first() is not None:
            raise DuplicateCredential("Credential is already registered")

        credential = Credential(
            account_id=account_id,
            credential_id=credential_id,
            public_key=public_key,
            sign_count=initial_counter,
            transports=list(transports or []),
            created_at=self._now(),
        )
        self.db.add(credential)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # Concurrent registration of the same id slipped past the check.
            raise DuplicateCredential("Credential is already registered") from e

        await self.events.append(
            stream_id=f"account:{account_id}",
            event_type=CREDENTIAL_ADDED,
            data={
                "credential_id": credential_id,
                "algorithm": webauthn.key_algorithm(public_key),
                "transports": credential.transports,
            },
        )
        return credential

    # ─── Assertions ─────────────────────────────────────

    async def verify_assertion(
        self,
        credential_id: str,
        *,
        authenticator_data: bytes,
        client_data_json: bytes,
        signature: bytes,
        expected_challenge: str,
        account_id: Optional[uuid.UUID] = None,
    ) -> Credential:
        """Verify a login assertion and advance the credential's counter.

        Order matters: the ceremony checks and the signature come first,
        then the counter. A replayed counter is rejected even when the
        signature is perfectly valid. Commits on success.
        """
        credential = await self.get(credential_id)
        if credential is None:
            raise CredentialNotFound("Unknown credential")
        if account_id is not None and credential.account_id != account_id:
            raise CredentialNotFound("Credential belongs to another account")

        client = webauthn.verify_client_data(
            client_data_json,
            expected_type=webauthn.GET,
            expected_challenge=expected_challenge,
            expected_origin=self.origin,
        )
        auth_data = webauthn.verify_authenticator_data(authenticator_data, rp_id=self.rp_id)
        webauthn.verify_signature(
            credential.public_key,
            signature,
            webauthn.assertion_signed_data(auth_data, client),
        )

        presented = auth_data.sign_count
        advances = Credential.sign_count < presented
        if presented == 0:
            advances = or_(advances, Credential.sign_count == 0)

        used_at = self._now()
        result = await self.db.execute(
            update(Credential)
            .where(Credential.credential_id == credential_id, advances)
            .values(sign_count=presented, last_used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "credential.counter_replay",
                credential_id=credential_id,
                stored=credential.sign_count,
                presented=presented,
            )
            await self.db.rollback()
            raise CounterReplay("Signature counter did not increase")

        await self.db.commit()
        # Reflect the UPDATE without marking the instance dirty.
        set_committed_value(credential, "sign_count", presented)
        set_committed_value(credential, "last_used_at", used_at)
        return credential

    # ─── Lookup + management ────────────────────────────

    async def get(self, credential_id: str) -> Credential | None:
        result = await self.db.execute(
            select(Credential).where(Credential.credential_id == credential_id)
        )
        return result.scalars().first()

    async def list_for_account(self, account_id: uuid.UUID) -> list[Credential]:
        result = await self.db.execute(
            select(Credential)
            .where(Credential.account_id == account_id)
            .order_by(Credential.created_at)
        )
        return list(result.scalars().all())

    async def remove(self, account_id: uuid.UUID, credential_id: str) -> None:
        """Delete one of an account's passkeys, refusing to delete the last.

        Learn: The "keep at least one" rule is part of the DELETE itself,
        so two concurrent removals of an account's last two passkeys can't
        both succeed and lock the owner out.
        """
        credential = await self.get(credential_id)
        if credential is None or credential.account_id != account_id:
            raise CredentialNotFound("Unknown credential")

        sibling = aliased(Credential)
        remaining = (
            select(func.count(sibling.id))
            .where(sibling.account_id == account_id)
            .scalar_subquery()
        )
        result = await self.db.execute(
            delete(Credential)
            .where(
                Credential.credential_id == credential_id,
                Credential.account_id == account_id,
                remaining > 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise LastCredential("Cannot remove the only passkey on an account")

        self.db.expunge(credential)
        await self.events.append(
            stream_id=f"account:{account_id}",
            event_type=CREDENTIAL_REMOVED,
            data={"credential_id": credential_id},
        )
        await self.db.commit()
