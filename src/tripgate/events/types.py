"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
"""

# ─── Identity ────────────────────────────────────────────

ACCOUNT_REGISTERED = "account.registered"
ACCOUNT_PROMOTED_ADMIN = "account.promoted_admin"
CREDENTIAL_ADDED = "credential.added"
CREDENTIAL_REMOVED = "credential.removed"
SESSION_ISSUED = "session.issued"
ACCOUNT_RECOVERY_REQUESTED = "account.recovery_requested"
ACCOUNT_RECOVERED = "account.recovered"
ACCOUNT_REREGISTERED = "account.reregistered"

# ─── Trips + grants ──────────────────────────────────────

TRIP_CREATED = "trip.created"
TRIP_GRANT_CREATED = "trip_grant.created"
TRIP_GRANT_UPDATED = "trip_grant.updated"
TRIP_GRANT_REVOKED = "trip_grant.revoked"

# ─── Invites ─────────────────────────────────────────────

INVITE_CREATED = "invite.created"
INVITE_REDEEMED = "invite.redeemed"
INVITE_REVOKED = "invite.revoked"
