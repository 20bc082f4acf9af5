"""Initial schema: accounts, passkeys, challenges, trips, grants, invites

Learn: Also seeds the admin_assignment marker row (slot=1, no admin).
Bootstrap's compare-and-set needs that row to exist before the first
registration; without it nobody could ever become admin.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _role(name: str) -> sa.Enum:
    return sa.Enum(
        "viewer", "editor",
        name=name,
        native_enum=False,
        create_constraint=True,
        length=10,
    )


def upgrade() -> None:
    # ─── Identity ────────────────────────────────────────
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("user_handle", sa.String(64), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "credentials",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("credential_id", sa.String(1024), nullable=False, unique=True),
        sa.Column(
            "account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("public_key", sa.LargeBinary(), nullable=False),
        sa.Column("sign_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("transports", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_credentials_account", "credentials", ["account_id"])

    op.create_table(
        "challenges",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("nonce", sa.String(128), nullable=False),
        sa.Column("purpose", sa.String(30), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column(
            "account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("user_handle", sa.String(64), nullable=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_challenges_expires", "challenges", ["expires_at"])

    op.create_table(
        "admin_assignment",
        sa.Column("slot", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column(
            "admin_account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute("INSERT INTO admin_assignment (slot) VALUES (1)")

    # ─── Access ──────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "trip_grants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "trip_id", sa.Uuid(),
            sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("role", _role("trip_role"), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "granted_by_account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.UniqueConstraint("account_id", "trip_id", name="uq_trip_grants_account_trip"),
    )
    op.create_index("idx_trip_grants_trip", "trip_grants", ["trip_id"])

    op.create_table(
        "invites",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "created_by_account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("role", _role("trip_role"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "redeemed_by_account_id", sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_invites_email", "invites", ["email"])

    op.create_table(
        "invite_trips",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "invite_id", sa.Uuid(),
            sa.ForeignKey("invites.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "trip_id", sa.Uuid(),
            sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.UniqueConstraint("invite_id", "trip_id", name="uq_invite_trips"),
    )

    # ─── Audit ───────────────────────────────────────────
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stream_id", sa.String(200), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_events_stream", "events", ["stream_id", "id"])
    op.create_index("idx_events_type", "events", ["type"])
    op.create_index("idx_events_created", "events", ["created_at"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("invite_trips")
    op.drop_table("invites")
    op.drop_table("trip_grants")
    op.drop_table("trips")
    op.drop_table("admin_assignment")
    op.drop_table("challenges")
    op.drop_table("credentials")
    op.drop_table("accounts")
