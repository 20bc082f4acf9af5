"""Ceremony service — passkey registration and login, end to end.

Learn: Each ceremony is two round trips:

  begin   → ChallengeManager stores a nonce, we return browser options
  verify  → consume the challenge (burned even if verification fails),
            check the browser's response, then write + issue a session

Registration's writes are one unit of work:

  INSERT account → Bootstrap compare-and-set → INSERT credential
  → events → COMMIT

so a failed credential insert never leaves an account without a passkey,
and a failed registration never leaves an admin behind.

An account whose passkeys were cleared by recovery registers again
through the same ceremony; its challenge carries the account id and the
new passkey is attached to that account instead.

Every failure is logged with its specific reason here. Routes only ever
say "Authentication failed".
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth import webauthn
from tripgate.auth.jwt import SessionIssuer
from tripgate.config import settings
from tripgate.db.models import Account, Credential
from tripgate.errors import (
    AccountNotFound,
    CeremonyError,
    ChallengeNotFound,
    DuplicateAccount,
    InvalidCeremonyResponse,
)
from tripgate.events.store import EventStore
from tripgate.events.types import ACCOUNT_REGISTERED, ACCOUNT_REREGISTERED, SESSION_ISSUED
from tripgate.services.bootstrap import Bootstrap
from tripgate.services.challenge_service import (
    AUTHENTICATION,
    CREDENTIAL_ADDITION,
    REGISTRATION,
    ChallengeManager,
    IssuedChallenge,
)
from tripgate.services.credential_service import CredentialRegistry

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _reason(error: Exception) -> str:
    """CounterReplay → counter_replay, for log fields."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", type(error).__name__).lower()


# Binary fields stay base64url-encoded until the challenge has been
# consumed, so even an undecodable response burns its challenge.


@dataclass(frozen=True)
class AttestationResponse:
    """What the browser sends back from navigator.credentials.create()."""

    credential_id: str
    client_data_json: str
    authenticator_data: str
    public_key: str
    transports: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AssertionResponse:
    """What the browser sends back from navigator.credentials.get()."""

    credential_id: str
    client_data_json: str
    authenticator_data: str
    signature: str
    user_handle: Optional[str] = None


@dataclass(frozen=True)
class NewCredential:
    credential_id: str
    public_key: bytes
    sign_count: int
    transports: list[str]


@dataclass(frozen=True)
class CeremonyResult:
    account: Account
    token: str


class CeremonyService:
    """Orchestrates ChallengeManager, CredentialRegistry, Bootstrap, SessionIssuer."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        issuer: Optional[SessionIssuer] = None,
        rp_id: Optional[str] = None,
        origin: Optional[str] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.events = EventStore(db)
        self.rp_id = rp_id or settings.rp_id
        self.origin = origin or settings.rp_origin
        self.issuer = issuer or SessionIssuer()
        self._now = now
        self.challenges = ChallengeManager(db, rp_id=self.rp_id, now=now)
        self.credentials = CredentialRegistry(
            db, self.events, rp_id=self.rp_id, origin=self.origin, now=now
        )
        self.bootstrap = Bootstrap(db, self.events, now=now)

    # ─── Registration ───────────────────────────────────

    async def begin_registration(
        self, email: str, display_name: Optional[str] = None
    ) -> IssuedChallenge:
        return await self.challenges.begin_registration(email, display_name)

    async def verify_registration(
        self, challenge_id: uuid.UUID, response: AttestationResponse
    ) -> CeremonyResult:
        """Create the account + first passkey and sign the user in.

        Raises a CeremonyError for anything wrong with the ceremony,
        DuplicateAccount / DuplicateCredential for collisions.
        """
        try:
            challenge = await self.challenges.consume(challenge_id, REGISTRATION)
            new = self._check_new_credential(challenge.nonce, response)
        except CeremonyError as e:
            logger.warning("ceremony.failed", ceremony=REGISTRATION, reason=_reason(e))
            raise

        if challenge.account_id is not None:
            return await self._reregister(challenge.account_id, new)

        account = Account(
            email=challenge.email,
            user_handle=challenge.user_handle,
            display_name=challenge.display_name,
            is_admin=False,
            created_at=self._now(),
        )
        try:
            taken = await self.db.execute(
                select(exists().where(Account.email == challenge.email))
            )
            if taken.scalar():
                raise DuplicateAccount(f"Email {challenge.email} is already registered")

            self.db.add(account)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise DuplicateAccount(f"Email {challenge.email} is already registered") from e

            await self.bootstrap.maybe_promote_to_admin(account)
            await self.credentials.register_credential(
                account.id,
                new.credential_id,
                new.public_key,
                initial_counter=new.sign_count,
                transports=new.transports,
            )
            await self.events.append(
                stream_id=f"account:{account.id}",
                event_type=ACCOUNT_REGISTERED,
                data={"email": account.email, "is_admin": account.is_admin},
            )
            token = await self._issue(account)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "account.registered",
            account_id=str(account.id),
            is_admin=account.is_admin,
        )
        return CeremonyResult(account=account, token=token)

    # ─── Authentication ─────────────────────────────────

    async def begin_authentication(self, email: str) -> IssuedChallenge:
        try:
            return await self.challenges.begin_authentication(email)
        except CeremonyError as e:
            logger.warning("ceremony.failed", ceremony=AUTHENTICATION, reason=_reason(e))
            raise

    async def verify_authentication(
        self, challenge_id: uuid.UUID, response: AssertionResponse
    ) -> CeremonyResult:
        """Check an assertion against the challenge's account and sign in."""
        try:
            challenge = await self.challenges.consume(challenge_id, AUTHENTICATION)
            account = await self.db.get(Account, challenge.account_id)
            if account is None:
                raise AccountNotFound("Challenge account no longer exists")
            if response.user_handle is not None and response.user_handle != account.user_handle:
                raise InvalidCeremonyResponse("userHandle does not match account")

            await self.credentials.verify_assertion(
                response.credential_id,
                authenticator_data=webauthn.b64url_decode(response.authenticator_data),
                client_data_json=webauthn.b64url_decode(response.client_data_json),
                signature=webauthn.b64url_decode(response.signature),
                expected_challenge=challenge.nonce,
                account_id=account.id,
            )
        except CeremonyError as e:
            logger.warning("ceremony.failed", ceremony=AUTHENTICATION, reason=_reason(e))
            raise

        token = await self._issue(account)
        await self.db.commit()
        logger.info("session.issued", account_id=str(account.id))
        return CeremonyResult(account=account, token=token)

    # ─── Additional passkeys ────────────────────────────

    async def begin_credential_addition(self, account_id: uuid.UUID) -> IssuedChallenge:
        return await self.challenges.begin_credential_addition(account_id)

    async def verify_credential_addition(
        self,
        account_id: uuid.UUID,
        challenge_id: uuid.UUID,
        response: AttestationResponse,
    ) -> Credential:
        try:
            challenge = await self.challenges.consume(challenge_id, CREDENTIAL_ADDITION)
            if challenge.account_id != account_id:
                raise ChallengeNotFound("Challenge issued to another account")
            new = self._check_new_credential(challenge.nonce, response)
        except CeremonyError as e:
            logger.warning(
                "ceremony.failed", ceremony=CREDENTIAL_ADDITION, reason=_reason(e)
            )
            raise

        try:
            credential = await self.credentials.register_credential(
                account_id,
                new.credential_id,
                new.public_key,
                initial_counter=new.sign_count,
                transports=new.transports,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return credential

    # ─── Status ─────────────────────────────────────────

    async def registration_status(self) -> dict:
        """Registration is "open" (next account becomes admin) until anyone signs up."""
        any_account = await self.db.execute(select(select(Account.id).exists()))
        return {"registration_open": not any_account.scalar()}

    # ─── Internals ──────────────────────────────────────

    async def _reregister(self, account_id: uuid.UUID, new: NewCredential) -> CeremonyResult:
        """Attach a first passkey to an existing account that has none left.

        No bootstrap here: the account keeps whatever admin flag it had.
        """
        try:
            account = await self.db.get(Account, account_id)
            if account is None:
                raise AccountNotFound("Account no longer exists")
            has_passkey = await self.db.execute(
                select(exists().where(Credential.account_id == account_id))
            )
            if has_passkey.scalar():
                raise DuplicateAccount(f"Email {account.email} is already registered")

            await self.credentials.register_credential(
                account.id,
                new.credential_id,
                new.public_key,
                initial_counter=new.sign_count,
                transports=new.transports,
            )
            await self.events.append(
                stream_id=f"account:{account.id}",
                event_type=ACCOUNT_REREGISTERED,
                data={"credential_id": new.credential_id},
            )
            token = await self._issue(account)
            await self.db.commit()
        except AccountNotFound as e:
            await self.db.rollback()
            logger.warning("ceremony.failed", ceremony=REGISTRATION, reason=_reason(e))
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info("account.reregistered", account_id=str(account.id))
        return CeremonyResult(account=account, token=token)

    def _check_new_credential(self, nonce: str, response: AttestationResponse) -> NewCredential:
        """Decode and check an attestation response. Attestation itself is 'none'."""
        if not webauthn.b64url_decode(response.credential_id):
            raise InvalidCeremonyResponse("Empty credential id")
        webauthn.verify_client_data(
            webauthn.b64url_decode(response.client_data_json),
            expected_type=webauthn.CREATE,
            expected_challenge=nonce,
            expected_origin=self.origin,
        )
        auth_data = webauthn.verify_authenticator_data(
            webauthn.b64url_decode(response.authenticator_data), rp_id=self.rp_id
        )
        public_key = webauthn.b64url_decode(response.public_key)
        webauthn.load_public_key(public_key)
        return NewCredential(
            credential_id=response.credential_id,
            public_key=public_key,
            sign_count=auth_data.sign_count,
            transports=list(response.transports),
        )

    async def _issue(self, account: Account) -> str:
        token = self.issuer.issue(account.id, account.is_admin)
        await self.events.append(
            stream_id=f"account:{account.id}",
            event_type=SESSION_ISSUED,
            data={"is_admin": account.is_admin},
        )
        return token
