"""Trip service — the resources that grants point at.

Learn: Trips are referenced in URLs by id OR slug, so a slug must never
look like a UUID (resolve_trip tries the UUID parse first).
"""

import re
import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.jwt import SessionClaims
from tripgate.auth.roles import Role
from tripgate.db.models import Trip, TripGrant
from tripgate.errors import TripConflict
from tripgate.events.store import EventStore
from tripgate.events.types import TRIP_CREATED
from tripgate.services.access_service import resolve_trip

logger = structlog.get_logger()

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def validate_slug(slug: str) -> str:
    """Return the slug if usable in URLs, else raise ValueError."""
    if not SLUG_PATTERN.match(slug) or len(slug) > 100:
        raise ValueError("Slug must be lowercase letters, digits and single hyphens")
    try:
        uuid.UUID(slug)
    except ValueError:
        return slug
    raise ValueError("Slug must not look like a UUID")


class TripService:
    """Create, fetch, and list trips."""

    def __init__(self, db: AsyncSession, events: Optional[EventStore] = None):
        self.db = db
        self.events = events or EventStore(db)

    async def create_trip(
        self, slug: str, title: str, created_by: uuid.UUID | None = None
    ) -> Trip:
        slug = validate_slug(slug)
        existing = await self.db.execute(select(Trip.id).where(Trip.slug == slug))
        if existing.first() is not None:
            raise TripConflict(f"Slug {slug} is already in use")

        trip = Trip(slug=slug, title=title.strip())
        self.db.add(trip)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise TripConflict(f"Slug {slug} is already in use") from e

        await self.events.append(
            stream_id=f"trip:{trip.id}",
            event_type=TRIP_CREATED,
            data={"slug": slug, "title": trip.title},
            metadata={"actor_id": str(created_by)} if created_by else None,
        )
        await self.db.commit()
        logger.info("trip.created", trip_id=str(trip.id), slug=slug)
        return trip

    async def get(self, trip_ref: uuid.UUID | str) -> Trip:
        return await resolve_trip(self.db, trip_ref)

    async def list_for(self, claims: SessionClaims) -> list[tuple[Trip, Role | None]]:
        """Trips visible to a session, with the session's role on each.

        Admins see everything (role None, since they hold no grants);
        everyone else sees only the trips they've been granted.
        """
        if claims.is_admin:
            result = await self.db.execute(select(Trip).order_by(Trip.created_at))
            return [(trip, None) for trip in result.scalars().all()]

        result = await self.db.execute(
            select(Trip, TripGrant.role)
            .join(TripGrant, TripGrant.trip_id == Trip.id)
            .where(TripGrant.account_id == claims.account_id)
            .order_by(Trip.created_at)
        )
        return [(trip, role) for trip, role in result.all()]
