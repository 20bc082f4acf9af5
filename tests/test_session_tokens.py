"""Session token tests — issue, verify, expiry, tampering."""

import uuid
from datetime import timedelta

import jwt
import pytest

from tripgate.auth.jwt import SessionIssuer
from tripgate.errors import TokenExpired, TokenInvalid

from soft_authenticator import FrozenClock


def _issuer(clock=None, secret="unit-test-secret") -> SessionIssuer:
    return SessionIssuer(secret=secret, now=clock or FrozenClock())


def test_issue_and_verify_roundtrip():
    account_id = uuid.uuid4()
    issuer = _issuer()
    claims = issuer.verify(issuer.issue(account_id, is_admin=True))
    assert claims.account_id == account_id
    assert claims.is_admin is True
    assert claims.expires_at - claims.issued_at == issuer.default_ttl


def test_one_hour_token_valid_at_59_minutes_expired_at_61():
    clock = FrozenClock()
    issuer = _issuer(clock)
    token = issuer.issue(uuid.uuid4(), is_admin=False, ttl=timedelta(hours=1))

    clock.advance(minutes=59)
    assert issuer.verify(token).is_admin is False

    clock.advance(minutes=2)
    with pytest.raises(TokenExpired):
        issuer.verify(token)


def test_expires_exactly_at_ttl():
    clock = FrozenClock()
    issuer = _issuer(clock)
    token = issuer.issue(uuid.uuid4(), is_admin=False, ttl=timedelta(minutes=5))
    clock.advance(minutes=5)
    with pytest.raises(TokenExpired):
        issuer.verify(token)


def test_wrong_secret_is_invalid():
    token = _issuer(secret="one").issue(uuid.uuid4(), is_admin=True)
    with pytest.raises(TokenInvalid):
        _issuer(secret="two").verify(token)


def test_tampered_admin_claim_is_invalid():
    """Flipping adm without re-signing breaks the signature."""
    issuer = _issuer()
    header, payload, signature = issuer.issue(uuid.uuid4(), is_admin=False).split(".")
    forged_payload = jwt.utils.base64url_encode(
        jwt.utils.base64url_decode(payload).replace(b'"adm":false', b'"adm":true')
    ).decode()
    with pytest.raises(TokenInvalid):
        issuer.verify(f"{header}.{forged_payload}.{signature}")


def test_garbage_token_is_invalid():
    with pytest.raises(TokenInvalid):
        _issuer().verify("definitely.not.a-token")


def test_non_session_token_is_invalid():
    """A JWT signed with our secret but missing session claims is rejected."""
    clock = FrozenClock()
    token = jwt.encode(
        {
            "sub": str(uuid.uuid4()),
            "iat": int(clock().timestamp()),
            "exp": int((clock() + timedelta(hours=1)).timestamp()),
        },
        "unit-test-secret",
        algorithm="HS256",
    )
    with pytest.raises(TokenInvalid):
        _issuer(clock).verify(token)


def test_non_uuid_subject_is_invalid():
    clock = FrozenClock()
    token = jwt.encode(
        {
            "sub": "not-a-uuid",
            "adm": False,
            "typ": "session",
            "iat": int(clock().timestamp()),
            "exp": int((clock() + timedelta(hours=1)).timestamp()),
        },
        "unit-test-secret",
        algorithm="HS256",
    )
    with pytest.raises(TokenInvalid):
        _issuer(clock).verify(token)
