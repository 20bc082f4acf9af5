"""Pydantic schemas for passkey ceremonies and sessions.

Learn: The WebAuthn payloads keep the browser's camelCase field names
(clientDataJSON, authenticatorData, ...) so the frontend can post
PublicKeyCredential.toJSON() output as-is. Everything of ours is
snake_case like the rest of the API.

Binary fields arrive as unpadded base64url strings; the route decodes
them into the ceremony dataclasses.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from tripgate.services.challenge_service import normalize_display_name, normalize_email


# ─── Begin (client → server) ────────────────────────────


class RegisterOptionsRequest(BaseModel):
    email: str = Field(..., description="Email for the new account")
    display_name: Optional[str] = Field(None, description="Shown to other trip members")

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)

    @field_validator("display_name")
    @classmethod
    def _display_name(cls, v: Optional[str]) -> Optional[str]:
        return normalize_display_name(v)


class LoginOptionsRequest(BaseModel):
    # Not validated: a malformed email must fail like an unknown one.
    email: str


class CeremonyOptions(BaseModel):
    """Challenge handle + options for navigator.credentials.create()/get()."""
    challenge_id: uuid.UUID
    options: dict


# ─── Verify (browser → server) ──────────────────────────


class AttestationPayload(BaseModel):
    client_data_json: str = Field(..., alias="clientDataJSON")
    authenticator_data: str = Field(..., alias="authenticatorData")
    public_key: str = Field(..., alias="publicKey", description="SPKI DER, base64url")
    transports: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class RegistrationCredential(BaseModel):
    id: str = Field(..., description="Credential id, base64url")
    type: str = "public-key"
    response: AttestationPayload


class AssertionPayload(BaseModel):
    client_data_json: str = Field(..., alias="clientDataJSON")
    authenticator_data: str = Field(..., alias="authenticatorData")
    signature: str
    user_handle: Optional[str] = Field(None, alias="userHandle")

    model_config = {"populate_by_name": True}


class AuthenticationCredential(BaseModel):
    id: str
    type: str = "public-key"
    response: AssertionPayload


class RegisterVerifyRequest(BaseModel):
    challenge_id: uuid.UUID
    credential: RegistrationCredential


class LoginVerifyRequest(BaseModel):
    challenge_id: uuid.UUID
    credential: AuthenticationCredential


# ─── Read (server → client) ─────────────────────────────


class AccountRead(BaseModel):
    id: uuid.UUID
    email: str
    display_name: Optional[str] = None
    is_admin: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionResponse(BaseModel):
    """Issued after a successful ceremony. There is no refresh token."""
    token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountRead


class PasskeyRead(BaseModel):
    credential_id: str
    transports: list[str]
    created_at: datetime
    last_used_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RegistrationStatus(BaseModel):
    registration_open: bool


# ─── Recovery ───────────────────────────────────────────


class RecoveryRequest(BaseModel):
    # Not validated: a malformed email gets the same answer as an unknown one.
    email: str


class RecoveryVerifyRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=1, max_length=16)


class RecoveryRequested(BaseModel):
    success: bool = True
    message: str = "If the account exists, a recovery code has been sent"


class RecoveryVerified(BaseModel):
    """Passkeys are cleared; the client should send the user to registration."""
    success: bool = True
    message: str = "Passkeys cleared. Register a new passkey with the same email."
    redirect_to: str = "/register"
