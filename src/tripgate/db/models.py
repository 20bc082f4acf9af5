"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Relationships, constraints, and indexes defined here.
Alembic auto-generates migrations by comparing these models to the actual DB.

Key concepts:
- UUID primary keys via the portable Uuid type (native on Postgres, CHAR(32) on SQLite)
- UTCDateTime so SQLite hands back aware datetimes just like timestamptz does
- Roles are a closed enum stored as VARCHAR + CHECK, not free text
- Ownership cascades: deleting an account removes its credentials and grants
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from tripgate.auth.roles import Role


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite has no timestamptz: values go in as naive UTC and come back
    re-tagged as UTC, so comparisons against utcnow() work everywhere.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _role_column() -> Enum:
    return Enum(
        Role,
        name="trip_role",
        native_enum=False,
        create_constraint=True,
        length=10,
        values_callable=lambda roles: [r.value for r in roles],
    )


# ══════════════════════════════════════════════════════════════
# Identity: accounts, credentials, ceremony challenges
# ══════════════════════════════════════════════════════════════


class Account(Base):
    """A person who signs in with passkeys.

    Learn: email is the external identifier; user_handle is the opaque,
    random WebAuthn user.id handed to authenticators (never the DB id,
    never the email). is_admin is set only by bootstrap.
    """

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_handle: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Relationships
    credentials: Mapped[list["Credential"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Credential(Base):
    """One registered authenticator (passkey) for an account.

    Learn: credential_id is globally unique — a collision across two
    accounts is an error, not a per-account duplicate. sign_count only
    moves forward; see CredentialRegistry.verify_assertion.
    """

    __tablename__ = "credentials"
    __table_args__ = (
        Index("idx_credentials_account", "account_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    credential_id: Mapped[str] = mapped_column(
        String(1024), unique=True, nullable=False
    )  # base64url, as reported by the browser
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    public_key: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False
    )  # SubjectPublicKeyInfo DER
    sign_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    transports: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="credentials")


class Challenge(Base):
    """A one-time ceremony nonce.

    Learn: Consumed (deleted) on the first verification attempt whether
    or not that attempt succeeds. Expired rows are swept lazily and by
    the background ChallengeSweeper; an unswept expired row just fails.

    Purposes: registration | authentication | credential_addition
    """

    __tablename__ = "challenges"
    __table_args__ = (
        Index("idx_challenges_expires", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    nonce: Mapped[str] = mapped_column(String(128), nullable=False)
    purpose: Mapped[str] = mapped_column(String(30), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )  # pending email (registration)
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )  # target account (authentication, credential_addition, re-registration)
    user_handle: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class AdminAssignment(Base):
    """Singleton marker row for first-account bootstrap.

    Learn: Exactly one row (slot=1), seeded at schema creation. The first
    registration to flip admin_account_id from NULL wins; the conditional
    UPDATE makes that a single atomic compare-and-set.
    """

    __tablename__ = "admin_assignment"

    slot: Mapped[int] = mapped_column(Integer, primary_key=True)
    admin_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class RecoveryToken(Base):
    """A short-lived code that lets an account clear its passkeys.

    Learn: One live token per account (requesting a new code deletes the
    old unused ones). Wrong guesses bump `attempts`; at the limit the
    token gets `locked_at` and can't be used even with the right code.
    A successful verify sets `used_at` in the same transaction that
    deletes the account's credentials.
    """

    __tablename__ = "recovery_tokens"
    __table_args__ = (
        Index("idx_recovery_tokens_account", "account_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


# ══════════════════════════════════════════════════════════════
# Access: trips, grants, invites
# ══════════════════════════════════════════════════════════════


class Trip(Base):
    """A shared resource that grants point at.

    Learn: Only the identity fields live here — photos, sections and
    covers belong to the media side of the system.
    """

    __tablename__ = "trips"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class TripGrant(Base):
    """Account → trip permission at a role.

    Learn: One row per (account, trip). Upgrades happen in place; there
    is never a viewer row and an editor row for the same pair.
    """

    __tablename__ = "trip_grants"
    __table_args__ = (
        UniqueConstraint("account_id", "trip_id", name="uq_trip_grants_account_trip"),
        Index("idx_trip_grants_trip", "trip_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    trip_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[Role] = mapped_column(_role_column(), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    granted_by_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )


class Invite(Base):
    """A redeemable capability: code → grants on a fixed set of trips.

    Learn: Created → Redeemed is the only stored transition (terminal).
    Expiry is implicit by time. Revocation is a soft terminal state kept
    for the audit trail.
    """

    __tablename__ = "invites"
    __table_args__ = (
        Index("idx_invites_email", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_by_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[Role] = mapped_column(_role_column(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    redeemed_by_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Relationships
    trips: Mapped[list["InviteTrip"]] = relationship(
        back_populates="invite",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def status_at(self, now: datetime) -> str:
        """pending | used | revoked | expired — derived, not stored."""
        if self.redeemed_at is not None:
            return "used"
        if self.revoked_at is not None:
            return "revoked"
        if now >= self.expires_at:
            return "expired"
        return "pending"


class InviteTrip(Base):
    """Junction: which trips an invite grants access to."""

    __tablename__ = "invite_trips"
    __table_args__ = (
        UniqueConstraint("invite_id", "trip_id", name="uq_invite_trips"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    invite_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invites.id", ondelete="CASCADE"), nullable=False
    )
    trip_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False
    )

    # Relationships
    invite: Mapped["Invite"] = relationship(back_populates="trips")


# ══════════════════════════════════════════════════════════════
# Audit: event log
# ══════════════════════════════════════════════════════════════


class Event(Base):
    """Immutable audit log.

    Learn: Every state change (registration, promotion, redemption,
    grant change) appends an event in the same transaction as the change,
    so the log never disagrees with the tables.

    stream_id examples: "account:<uuid>", "invite:<uuid>", "trip:<uuid>"
    type examples: "account.registered", "invite.redeemed"
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
        Index("idx_events_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )  # actor_id, request_id
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
