"""Domain error taxonomy.

Learn: Services raise these; API routes translate them to HTTP responses.
Two grouping bases matter for the HTTP layer:

- CeremonyError: every failure during a passkey ceremony. Routes collapse
  all of them into one generic "Authentication failed" so a caller can't
  tell an unknown email from a bad signature from a replayed counter.
- InviteError: redemption failures, surfaced by kind — except that
  InviteNotFound and InviteExpired share one response.
"""


class TripgateError(Exception):
    """Base class for all domain errors."""


# ─── Ceremonies ──────────────────────────────────────────


class CeremonyError(TripgateError):
    """A registration or authentication ceremony failed."""


class ChallengeNotFound(CeremonyError):
    """Challenge is unknown, already consumed, or issued for another purpose."""


class ChallengeExpired(CeremonyError):
    """Challenge outlived its TTL before being consumed."""


class AccountNotFound(CeremonyError):
    """No account (with a usable credential) for this email or id."""


class CredentialNotFound(CeremonyError):
    """Credential id unknown, or not owned by the ceremony's account."""


class SignatureInvalid(CeremonyError):
    """Assertion signature does not verify against the stored public key."""


class CounterReplay(CeremonyError):
    """Presented signature counter did not strictly increase."""


class InvalidCeremonyResponse(CeremonyError):
    """Client response is malformed or fails origin/rp/challenge checks."""


class DuplicateAccount(TripgateError):
    """Email is already registered."""


class DuplicateCredential(TripgateError):
    """Credential id is already bound to an account (any account)."""


class LastCredential(TripgateError):
    """Refused to remove an account's only passkey."""


# ─── Recovery ────────────────────────────────────────────


class RecoveryError(TripgateError):
    """Account recovery code verification failed."""


class RecoveryCodeInvalid(RecoveryError):
    """No live code for this email, or the code is wrong."""

    def __init__(self, message: str, remaining_attempts: int | None = None):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class RecoveryLocked(RecoveryError):
    """Too many wrong guesses; a new code must be requested."""


# ─── Sessions ────────────────────────────────────────────


class TokenInvalid(TripgateError):
    """Token is malformed, has a bad signature, or altered claims."""


class TokenExpired(TripgateError):
    """Token signature is fine but its expiry has passed."""


# ─── Access ──────────────────────────────────────────────


class AccessDenied(TripgateError):
    """Account lacks the role required for this trip."""


class TripNotFound(TripgateError):
    """No trip with this id or slug."""


class TripConflict(TripgateError):
    """Slug is already taken by another trip."""


class GrantNotFound(TripgateError):
    """No trip grant with this id."""


class GrantConflict(TripgateError):
    """Grant can't be created (already exists, or target is an admin)."""


# ─── Invites ─────────────────────────────────────────────


class InviteError(TripgateError):
    """Invite creation or redemption failed."""


class EmptyTripSet(InviteError):
    """Invite must name at least one trip."""


class InviteNotFound(InviteError):
    """No invite with this code."""


class InviteExpired(InviteError):
    """Invite expiry has passed."""


class InviteAlreadyUsed(InviteError):
    """Invite was already redeemed (or revoked) — terminal."""


class InviteEmailMismatch(InviteError):
    """Invite is bound to a different email than the redeeming account."""


class InviteConflict(InviteError):
    """A pending invite already exists for this email."""


class InviteNotRevocable(InviteError):
    """Only pending invites can be revoked."""
