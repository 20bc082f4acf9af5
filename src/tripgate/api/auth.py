"""Auth API — passkey registration, login, and passkey management.

Learn: Routes for the passwordless account lifecycle:
- POST /auth/register/options → challenge + creation options
- POST /auth/register/verify → create account + first passkey → session
- POST /auth/login/options → challenge + request options
- POST /auth/login/verify → verify assertion → session
- GET /auth/me → current account
- GET /auth/registration-status → is the admin slot still open?
- POST /auth/passkeys/options, /auth/passkeys/verify → add a passkey
- GET /auth/passkeys → list own passkeys
- DELETE /auth/passkeys/:credential_id → remove one (never the last)
- POST /auth/logout → stateless, the client drops its token
- POST /auth/recovery/request → send a one-time code to the operator
- POST /auth/recovery/verify → right code clears the account's passkeys

Every ceremony failure is the same 401 "Authentication failed" — which
check failed is only in the server log.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from tripgate.auth.dependencies import CurrentIdentity, get_current_user, get_session_issuer
from tripgate.auth.jwt import SessionIssuer
from tripgate.db.engine import get_db
from tripgate.db.models import Account
from tripgate.errors import (
    AccountNotFound,
    CeremonyError,
    CredentialNotFound,
    DuplicateAccount,
    DuplicateCredential,
    LastCredential,
    RecoveryError,
)
from tripgate.schemas.auth import (
    AccountRead,
    AuthenticationCredential,
    CeremonyOptions,
    LoginOptionsRequest,
    LoginVerifyRequest,
    PasskeyRead,
    RecoveryRequest,
    RecoveryRequested,
    RecoveryVerified,
    RecoveryVerifyRequest,
    RegisterOptionsRequest,
    RegistrationCredential,
    RegisterVerifyRequest,
    RegistrationStatus,
    SessionResponse,
)
from tripgate.services.ceremony_service import (
    AssertionResponse,
    AttestationResponse,
    CeremonyResult,
    CeremonyService,
)
from tripgate.services.credential_service import CredentialRegistry
from tripgate.services.notifier import Notifier, default_notifier
from tripgate.services.recovery_service import RecoveryService

router = APIRouter(prefix="/auth")

AUTH_FAILED = "Authentication failed"


def _get_service(
    db: AsyncSession = Depends(get_db),
    issuer: SessionIssuer = Depends(get_session_issuer),
) -> CeremonyService:
    return CeremonyService(db, issuer=issuer)


def get_notifier() -> Notifier:
    return default_notifier()


def _get_recovery(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> RecoveryService:
    return RecoveryService(db, notifier=notifier)


def _attestation(credential: RegistrationCredential) -> AttestationResponse:
    r = credential.response
    return AttestationResponse(
        credential_id=credential.id,
        client_data_json=r.client_data_json,
        authenticator_data=r.authenticator_data,
        public_key=r.public_key,
        transports=r.transports,
    )


def _assertion(credential: AuthenticationCredential) -> AssertionResponse:
    r = credential.response
    return AssertionResponse(
        credential_id=credential.id,
        client_data_json=r.client_data_json,
        authenticator_data=r.authenticator_data,
        signature=r.signature,
        user_handle=r.user_handle,
    )


def _session(result: CeremonyResult, issuer: SessionIssuer) -> SessionResponse:
    return SessionResponse(
        token=result.token,
        expires_in=int(issuer.default_ttl.total_seconds()),
        account=AccountRead.model_validate(result.account),
    )


# ─── Registration ────────────────────────────────────────


@router.post("/register/options", response_model=CeremonyOptions)
async def register_options(
    body: RegisterOptionsRequest,
    svc: CeremonyService = Depends(_get_service),
):
    """Start registering a new account."""
    try:
        issued = await svc.begin_registration(body.email, body.display_name)
    except DuplicateAccount:
        raise HTTPException(status_code=409, detail="Email already registered")
    return CeremonyOptions(challenge_id=issued.challenge_id, options=issued.options)


@router.post("/register/verify", response_model=SessionResponse, status_code=201)
async def register_verify(
    body: RegisterVerifyRequest,
    svc: CeremonyService = Depends(_get_service),
):
    """Finish registration: create account + passkey, return a session."""
    try:
        result = await svc.verify_registration(body.challenge_id, _attestation(body.credential))
    except CeremonyError:
        raise HTTPException(status_code=401, detail=AUTH_FAILED)
    except DuplicateAccount:
        raise HTTPException(status_code=409, detail="Email already registered")
    except DuplicateCredential:
        raise HTTPException(status_code=409, detail="Passkey already registered")
    return _session(result, svc.issuer)


@router.get("/registration-status", response_model=RegistrationStatus)
async def registration_status(svc: CeremonyService = Depends(_get_service)):
    return await svc.registration_status()


# ─── Login ───────────────────────────────────────────────


@router.post("/login/options", response_model=CeremonyOptions)
async def login_options(
    body: LoginOptionsRequest,
    svc: CeremonyService = Depends(_get_service),
):
    """Start a login. Unknown emails get the same 401 as bad assertions."""
    try:
        issued = await svc.begin_authentication(body.email)
    except CeremonyError:
        raise HTTPException(status_code=401, detail=AUTH_FAILED)
    return CeremonyOptions(challenge_id=issued.challenge_id, options=issued.options)


@router.post("/login/verify", response_model=SessionResponse)
async def login_verify(
    body: LoginVerifyRequest,
    svc: CeremonyService = Depends(_get_service),
):
    try:
        result = await svc.verify_authentication(body.challenge_id, _assertion(body.credential))
    except CeremonyError:
        raise HTTPException(status_code=401, detail=AUTH_FAILED)
    return _session(result, svc.issuer)


@router.post("/logout")
async def logout(identity: CurrentIdentity = Depends(get_current_user)):
    """Sessions are stateless; nothing to invalidate server-side."""
    return {"success": True}


# ─── Current account ─────────────────────────────────────


@router.get("/me", response_model=AccountRead)
async def get_me(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the current authenticated account."""
    account = await db.get(Account, identity.account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


# ─── Passkey management ──────────────────────────────────


@router.post("/passkeys/options", response_model=CeremonyOptions)
async def add_passkey_options(
    identity: CurrentIdentity = Depends(get_current_user),
    svc: CeremonyService = Depends(_get_service),
):
    """Start registering another passkey for the signed-in account."""
    try:
        issued = await svc.begin_credential_addition(identity.account_id)
    except AccountNotFound:
        raise HTTPException(status_code=404, detail="Account not found")
    return CeremonyOptions(challenge_id=issued.challenge_id, options=issued.options)


@router.post("/passkeys/verify", response_model=PasskeyRead, status_code=201)
async def add_passkey_verify(
    body: RegisterVerifyRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: CeremonyService = Depends(_get_service),
):
    try:
        return await svc.verify_credential_addition(
            identity.account_id, body.challenge_id, _attestation(body.credential)
        )
    except CeremonyError:
        raise HTTPException(status_code=401, detail=AUTH_FAILED)
    except DuplicateCredential:
        raise HTTPException(status_code=409, detail="Passkey already registered")


@router.get("/passkeys", response_model=list[PasskeyRead])
async def list_passkeys(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await CredentialRegistry(db).list_for_account(identity.account_id)


@router.delete("/passkeys/{credential_id}")
async def delete_passkey(
    credential_id: str,
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Remove one of your passkeys. The last one can't be removed."""
    try:
        await CredentialRegistry(db).remove(identity.account_id, credential_id)
    except CredentialNotFound:
        raise HTTPException(status_code=404, detail="Passkey not found")
    except LastCredential:
        raise HTTPException(status_code=409, detail="Cannot remove your only passkey")
    return {"deleted": True}


# ─── Recovery ────────────────────────────────────────────


@router.post("/recovery/request", response_model=RecoveryRequested)
async def recovery_request(
    body: RecoveryRequest,
    svc: RecoveryService = Depends(_get_recovery),
):
    """Send a recovery code out of band. Same answer whether or not the email exists."""
    await svc.request(body.email)
    return RecoveryRequested()


@router.post("/recovery/verify", response_model=RecoveryVerified)
async def recovery_verify(
    body: RecoveryVerifyRequest,
    svc: RecoveryService = Depends(_get_recovery),
):
    """Check the code; on success the account can register a new passkey."""
    try:
        await svc.verify(body.email, body.code)
    except RecoveryError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RecoveryVerified()
