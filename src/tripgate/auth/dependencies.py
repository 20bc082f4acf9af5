"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current identity from the request.

One auth mechanism: a Bearer session token in the Authorization header.
The token is verified (signature + expiry) before any handler body runs;
the claims inside it are all we know about the caller.

Trip routes layer require_trip_access(min_role) on top:
  unknown trip → 404, known trip but no sufficient grant → 403.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Header
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.jwt import SessionClaims, SessionIssuer
from tripgate.auth.roles import Role
from tripgate.db.engine import get_db
from tripgate.db.models import Trip
from tripgate.errors import AccessDenied, TokenExpired, TokenInvalid, TripNotFound
from tripgate.services.access_service import AccessResolver, resolve_trip


class CurrentIdentity:
    """Represents the authenticated session making the request.

    Learn: Built purely from verified token claims — no DB lookup. An
    admin promoted after the token was issued stays non-admin here
    until they sign in again.
    """

    def __init__(self, claims: SessionClaims):
        self.claims = claims
        self.account_id = claims.account_id
        self.is_admin = claims.is_admin


def get_session_issuer() -> SessionIssuer:
    return SessionIssuer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    issuer: SessionIssuer = Depends(get_session_issuer),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if missing or invalid)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise _unauthorized("Authentication required")

    try:
        claims = issuer.verify(authorization[7:])
    except (TokenInvalid, TokenExpired):
        raise _unauthorized("Invalid or expired token")
    return CurrentIdentity(claims)


async def require_admin(
    identity: CurrentIdentity = Depends(get_current_user),
) -> CurrentIdentity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return identity


def require_trip_access(min_role: Role):
    """Dependency factory: resolve {trip_ref} and enforce `min_role` on it.

    Usage:
        @router.get("/trips/{trip_ref}")
        async def get_trip(trip: Trip = Depends(require_trip_access(Role.VIEWER))):
    """

    async def dependency(
        trip_ref: str,
        identity: CurrentIdentity = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> Trip:
        try:
            trip = await resolve_trip(db, trip_ref)
        except TripNotFound:
            raise HTTPException(status_code=404, detail="Trip not found")

        try:
            await AccessResolver(db).require(identity.claims, trip.id, min_role)
        except AccessDenied:
            raise HTTPException(status_code=403, detail="Access denied")
        return trip

    return dependency
