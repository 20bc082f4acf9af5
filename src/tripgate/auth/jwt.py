"""Session tokens — signed, stateless, time-bounded.

Learn: A session token is a JWT (HS256 by default) carrying exactly
{sub: account id, adm: is-admin, iat, exp}. There is no server-side
session store and no refresh token: verification is a signature check
plus an expiry check, and an expired token means a new passkey ceremony.

The admin flag in the token is the source of truth for the request.
If an account's flag changes after issuance, already-issued tokens keep
the old value until they expire — staleness is bounded by the TTL.

Expiry is checked against an injectable clock instead of PyJWT's own
wall-clock check, so it can be tested deterministically.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from tripgate.config import settings
from tripgate.errors import TokenExpired, TokenInvalid

TOKEN_TYPE = "session"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionClaims:
    """Decoded, verified claims — never persisted."""

    account_id: uuid.UUID
    is_admin: bool
    issued_at: datetime
    expires_at: datetime


class SessionIssuer:
    """Mints and verifies session tokens."""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        default_ttl: Optional[timedelta] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.secret = secret or settings.jwt_secret
        self.algorithm = algorithm or settings.jwt_algorithm
        self.default_ttl = default_ttl or timedelta(minutes=settings.session_ttl_minutes)
        self._now = now

    def issue(
        self,
        account_id: uuid.UUID | str,
        is_admin: bool,
        ttl: Optional[timedelta] = None,
    ) -> str:
        """Create a signed token for an account."""
        issued_at = self._now()
        expires_at = issued_at + (ttl or self.default_ttl)
        payload = {
            "sub": str(account_id),
            "adm": bool(is_admin),
            "typ": TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> SessionClaims:
        """Verify signature, shape, and expiry.

        Raises TokenExpired for a well-signed but expired token,
        TokenInvalid for everything else.
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "iat", "exp"],
                },
            )
        except jwt.InvalidTokenError as e:
            raise TokenInvalid(f"Invalid token: {e}") from e

        if payload.get("typ") != TOKEN_TYPE or not isinstance(payload.get("adm"), bool):
            raise TokenInvalid("Not a session token")
        try:
            account_id = uuid.UUID(payload["sub"])
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as e:
            raise TokenInvalid(f"Malformed claims: {e}") from e

        if self._now() >= expires_at:
            raise TokenExpired("Token has expired")

        return SessionClaims(
            account_id=account_id,
            is_admin=payload["adm"],
            issued_at=issued_at,
            expires_at=expires_at,
        )
