"""WebAuthn ceremony primitives — parsing, checks, and signature verification.

Learn: A passkey ceremony is challenge/response. The server hands out a
random challenge; the authenticator signs over

    authenticatorData || SHA-256(clientDataJSON)

where clientDataJSON embeds that challenge and the page origin, and
authenticatorData embeds SHA-256(rp_id), flags, and a signature counter.

We accept the browser's JSON serialization of credentials. For
registration the public key comes pre-extracted as SubjectPublicKeyInfo
DER (AuthenticatorAttestationResponse.getPublicKey()), so no CBOR
attestation parsing is needed — attestation is "none" anyway.

Signatures are verified with `cryptography`:
- ES256  (-7):   ECDSA P-256 / SHA-256, DER-encoded signature
- EdDSA  (-8):   Ed25519, raw 64-byte signature
- RS256  (-257): RSASSA-PKCS1-v1_5 / SHA-256
"""

import base64
import binascii
import hashlib
import hmac
import json
import struct
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import load_der_public_key

from tripgate.errors import InvalidCeremonyResponse, SignatureInvalid

COSE_ES256 = -7
COSE_EDDSA = -8
COSE_RS256 = -257
SUPPORTED_ALGORITHMS = (COSE_ES256, COSE_EDDSA, COSE_RS256)

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04

CREATE = "webauthn.create"
GET = "webauthn.get"

_MIN_RSA_BITS = 2048


# ─── base64url ───────────────────────────────────────────


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url; malformed input is a bad ceremony response."""
    try:
        padded = value + "=" * (-len(value) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise InvalidCeremonyResponse(f"Invalid base64url: {e}") from e


# ─── clientDataJSON ──────────────────────────────────────


@dataclass(frozen=True)
class ClientData:
    type: str
    challenge: str
    origin: str
    raw: bytes

    @property
    def digest(self) -> bytes:
        return hashlib.sha256(self.raw).digest()


def verify_client_data(
    raw: bytes,
    *,
    expected_type: str,
    expected_challenge: str,
    expected_origin: str,
) -> ClientData:
    """Parse clientDataJSON and check type, challenge, and origin."""
    try:
        parsed = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidCeremonyResponse("clientDataJSON is not JSON") from e
    if not isinstance(parsed, dict):
        raise InvalidCeremonyResponse("clientDataJSON is not an object")

    client = ClientData(
        type=str(parsed.get("type", "")),
        challenge=str(parsed.get("challenge", "")),
        origin=str(parsed.get("origin", "")),
        raw=raw,
    )
    if client.type != expected_type:
        raise InvalidCeremonyResponse(f"Unexpected ceremony type {client.type!r}")
    if not hmac.compare_digest(client.challenge.encode(), expected_challenge.encode()):
        raise InvalidCeremonyResponse("Challenge mismatch")
    if client.origin != expected_origin:
        raise InvalidCeremonyResponse(f"Unexpected origin {client.origin!r}")
    return client


# ─── authenticatorData ───────────────────────────────────


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    raw: bytes

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @classmethod
    def parse(cls, raw: bytes) -> "AuthenticatorData":
        """Parse the fixed 37-byte header (extensions/attested data ignored)."""
        if len(raw) < 37:
            raise InvalidCeremonyResponse("authenticatorData too short")
        (sign_count,) = struct.unpack(">I", raw[33:37])
        return cls(rp_id_hash=raw[:32], flags=raw[32], sign_count=sign_count, raw=raw)


def verify_authenticator_data(raw: bytes, *, rp_id: str) -> AuthenticatorData:
    """Parse authenticatorData and check it is bound to our RP with user presence."""
    auth_data = AuthenticatorData.parse(raw)
    expected = hashlib.sha256(rp_id.encode()).digest()
    if not hmac.compare_digest(auth_data.rp_id_hash, expected):
        raise InvalidCeremonyResponse("rpIdHash mismatch")
    if not auth_data.user_present:
        raise InvalidCeremonyResponse("User presence flag not set")
    return auth_data


# ─── Public keys + signatures ────────────────────────────


def load_public_key(der: bytes):
    """Load an SPKI DER public key, rejecting unsupported key types."""
    try:
        key = load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidCeremonyResponse("Unreadable public key") from e

    if isinstance(key, ec.EllipticCurvePublicKey):
        if not isinstance(key.curve, ec.SECP256R1):
            raise InvalidCeremonyResponse(f"Unsupported curve {key.curve.name}")
        return key
    if isinstance(key, Ed25519PublicKey):
        return key
    if isinstance(key, rsa.RSAPublicKey):
        if key.key_size < _MIN_RSA_BITS:
            raise InvalidCeremonyResponse("RSA key too small")
        return key
    raise InvalidCeremonyResponse("Unsupported public key type")


def key_algorithm(der: bytes) -> int:
    """COSE algorithm identifier implied by a stored public key."""
    key = load_public_key(der)
    if isinstance(key, ec.EllipticCurvePublicKey):
        return COSE_ES256
    if isinstance(key, Ed25519PublicKey):
        return COSE_EDDSA
    return COSE_RS256


def verify_signature(public_key_der: bytes, signature: bytes, signed_data: bytes) -> None:
    """Raise SignatureInvalid unless `signature` verifies over `signed_data`."""
    key = load_public_key(public_key_der)
    try:
        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(key, Ed25519PublicKey):
            key.verify(signature, signed_data)
        else:
            key.verify(signature, signed_data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature as e:
        raise SignatureInvalid("Assertion signature did not verify") from e


def assertion_signed_data(auth_data: AuthenticatorData, client: ClientData) -> bytes:
    return auth_data.raw + client.digest


# ─── Options (what the browser feeds to navigator.credentials) ──


def registration_options(
    *,
    challenge: str,
    rp_id: str,
    rp_name: str,
    user_handle: str,
    user_name: str,
    display_name: str,
    timeout_ms: int,
    exclude_credentials: list[dict] | None = None,
) -> dict:
    """PublicKeyCredentialCreationOptions, JSON-serialized."""
    return {
        "challenge": challenge,
        "rp": {"id": rp_id, "name": rp_name},
        "user": {"id": user_handle, "name": user_name, "displayName": display_name},
        "pubKeyCredParams": [
            {"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS
        ],
        "timeout": timeout_ms,
        "attestation": "none",
        "excludeCredentials": exclude_credentials or [],
        "authenticatorSelection": {
            "residentKey": "preferred",
            "userVerification": "preferred",
        },
    }


def authentication_options(
    *,
    challenge: str,
    rp_id: str,
    allow_credentials: list[dict],
    timeout_ms: int,
) -> dict:
    """PublicKeyCredentialRequestOptions, JSON-serialized."""
    return {
        "challenge": challenge,
        "rpId": rp_id,
        "allowCredentials": allow_credentials,
        "userVerification": "preferred",
        "timeout": timeout_ms,
    }


def credential_descriptor(credential_id: str, transports: list[str] | None) -> dict:
    descriptor = {"type": "public-key", "id": credential_id}
    if transports:
        descriptor["transports"] = list(transports)
    return descriptor
