"""Account recovery tests — one-time codes, lockout, re-registration.

Learn: The key scenarios:
1. A code is only issued (and sent) for a known email; the answer
   doesn't change either way.
2. Wrong guesses count down; the fifth locks the code for good, even
   against the right code.
3. The right code clears every passkey exactly once.
4. The cleared account registers again under its own email and keeps
   its id, user handle and admin flag.
"""

import asyncio
import json
import re

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from tripgate.api.auth import get_notifier
from tripgate.auth.jwt import SessionIssuer
from tripgate.db.models import Account, Credential, Event, RecoveryToken
from tripgate.errors import (
    AccountNotFound,
    CeremonyError,
    DuplicateAccount,
    RecoveryCodeInvalid,
    RecoveryLocked,
)
from tripgate.main import app
from tripgate.services import notifier as notifier_module
from tripgate.services.ceremony_service import CeremonyService
from tripgate.services.notifier import LogNotifier, Notifier, TelegramNotifier
from tripgate.services.recovery_service import RecoveryService, generate_code

from soft_authenticator import (
    FrozenClock,
    SoftAuthenticator,
    attestation,
    bearer,
    login_via_api,
    login_via_service,
    register_via_api,
    register_via_service,
)


class Outbox(Notifier):
    """Keeps every message instead of sending it."""

    def __init__(self):
        self.sent: list[str] = []

    async def send(self, text: str) -> bool:
        self.sent.append(text)
        return True

    def last_code(self) -> str:
        codes = [m.group(1) for t in self.sent if (m := re.search(r"<code>(\d+)</code>", t))]
        assert codes, self.sent
        return codes[-1]


async def _no_pause() -> None:
    return None


@pytest.fixture()
def outbox():
    return Outbox()


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest_asyncio.fixture()
async def recovery(db, outbox, clock):
    return RecoveryService(db, notifier=outbox, now=clock, pause=_no_pause)


@pytest_asyncio.fixture()
async def traveler(ceremony):
    """A registered account (the first, so admin) and its authenticator."""
    authenticator = SoftAuthenticator()
    result = await register_via_service(ceremony, authenticator, "traveler@example.com", "Trav")
    return result.account, authenticator


async def _passkeys(db, account_id) -> int:
    result = await db.execute(
        select(func.count(Credential.id)).where(Credential.account_id == account_id)
    )
    return result.scalar()


async def _token_state(db, account_id):
    result = await db.execute(
        select(RecoveryToken.attempts, RecoveryToken.locked_at, RecoveryToken.used_at)
        .where(RecoveryToken.account_id == account_id)
    )
    return result.all()


def test_generate_code_is_six_digits():
    for _ in range(50):
        code = generate_code()
        assert len(code) == 6 and code.isdigit()


# ═══════════════════════════════════════════════════════════
# Request
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_request_unknown_email_sends_nothing(db, recovery, outbox):
    await recovery.request("ghost@example.com")
    await recovery.request("not an email")
    assert outbox.sent == []
    assert (await db.execute(select(RecoveryToken))).scalars().all() == []


@pytest.mark.asyncio
async def test_request_stores_code_and_notifies(db, recovery, outbox, clock, traveler):
    account, _ = traveler
    await recovery.request(" Traveler@Example.com ")

    (token,) = (await db.execute(select(RecoveryToken))).scalars().all()
    assert token.account_id == account.id
    assert token.attempts == 0
    assert token.expires_at == clock() + recovery.ttl
    assert outbox.last_code() == token.code
    assert "traveler@example.com" in outbox.sent[-1]

    events = await db.execute(
        select(Event).where(Event.type == "account.recovery_requested")
    )
    assert len(events.scalars().all()) == 1


@pytest.mark.asyncio
async def test_new_request_supersedes_previous(db, recovery, outbox, traveler):
    account, _ = traveler
    await recovery.request(account.email)
    old = outbox.last_code()
    await recovery.request(account.email)
    new = outbox.last_code()

    assert len(await _token_state(db, account.id)) == 1
    if old != new:
        with pytest.raises(RecoveryCodeInvalid):
            await recovery.verify(account.email, old)
    assert await recovery.verify(account.email, new) == account.id


# ═══════════════════════════════════════════════════════════
# Verify
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_verify_without_request(recovery, traveler):
    account, _ = traveler
    with pytest.raises(RecoveryCodeInvalid, match="Invalid or expired code"):
        await recovery.verify(account.email, "123456")


@pytest.mark.asyncio
async def test_wrong_code_counts_down_then_locks(db, recovery, outbox, traveler):
    account, _ = traveler
    await recovery.request(account.email)
    code = outbox.last_code()
    wrong = "000000" if code != "000000" else "111111"

    for remaining in (4, 3, 2, 1):
        with pytest.raises(RecoveryCodeInvalid) as exc:
            await recovery.verify(account.email, wrong)
        assert exc.value.remaining_attempts == remaining
        assert str(exc.value) == f"Invalid code. {remaining} attempts remaining."

    with pytest.raises(RecoveryLocked):
        await recovery.verify(account.email, wrong)
    # Locked means locked: the right code doesn't help any more.
    with pytest.raises(RecoveryLocked):
        await recovery.verify(account.email, code)

    ((attempts, locked_at, used_at),) = await _token_state(db, account.id)
    assert attempts == 5
    assert locked_at is not None and used_at is None
    assert await _passkeys(db, account.id) == 1


@pytest.mark.asyncio
async def test_locked_token_replaced_by_new_request(db, recovery, outbox, traveler):
    account, _ = traveler
    await recovery.request(account.email)
    code = outbox.last_code()
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(5):
        with pytest.raises((RecoveryCodeInvalid, RecoveryLocked)):
            await recovery.verify(account.email, wrong)

    await recovery.request(account.email)
    assert await recovery.verify(account.email, outbox.last_code()) == account.id


@pytest.mark.asyncio
async def test_expired_code(recovery, outbox, clock, traveler):
    account, _ = traveler
    await recovery.request(account.email)
    clock.advance(minutes=10)
    with pytest.raises(RecoveryCodeInvalid, match="Invalid or expired code"):
        await recovery.verify(account.email, outbox.last_code())


@pytest.mark.asyncio
async def test_right_code_clears_passkeys_once(db, ceremony, recovery, outbox, traveler):
    account, authenticator = traveler
    await recovery.request(account.email)
    code = outbox.last_code()

    assert await recovery.verify(account.email, code) == account.id
    assert await _passkeys(db, account.id) == 0
    assert "Recovery successful" in outbox.sent[-1]

    (event,) = (
        await db.execute(select(Event).where(Event.type == "account.recovered"))
    ).scalars().all()
    assert event.stream_id == f"account:{account.id}"
    assert event.data == {"credentials_removed": 1}

    with pytest.raises(RecoveryCodeInvalid):
        await recovery.verify(account.email, code)
    # No passkeys left means no login, by the same error as an unknown email.
    with pytest.raises(AccountNotFound):
        await login_via_service(ceremony, authenticator, account.email)


@pytest.mark.asyncio
async def test_concurrent_wrong_guesses_lock_at_limit(session_factory, outbox, traveler):
    account, _ = traveler
    async with session_factory() as db:
        await RecoveryService(db, notifier=outbox, pause=_no_pause).request(account.email)
    code = outbox.last_code()
    wrong = "000000" if code != "000000" else "111111"

    async def guess():
        async with session_factory() as db:
            svc = RecoveryService(db, notifier=outbox, pause=_no_pause)
            try:
                await svc.verify(account.email, wrong)
            except RecoveryLocked:
                return "locked"
            except RecoveryCodeInvalid:
                return "invalid"
            return "ok"

    outcomes = await asyncio.gather(*(guess() for _ in range(8)))
    assert "ok" not in outcomes
    assert "locked" in outcomes

    async with session_factory() as db:
        ((attempts, locked_at, _),) = await _token_state(db, account.id)
    assert attempts == 5
    assert locked_at is not None


# ═══════════════════════════════════════════════════════════
# Re-registration
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reregister_keeps_account_identity(db, ceremony, recovery, outbox, traveler):
    account, old_authenticator = traveler
    account_id, user_handle = account.id, account.user_handle
    assert account.is_admin is True

    with pytest.raises(DuplicateAccount):
        await ceremony.begin_registration(account.email)

    await recovery.request(account.email)
    await recovery.verify(account.email, outbox.last_code())

    issued = await ceremony.begin_registration(account.email)
    assert issued.options["user"]["id"] == user_handle
    assert issued.options["user"]["displayName"] == "Trav"

    fresh = SoftAuthenticator("ed25519")
    result = await register_via_service(ceremony, fresh, account.email)
    assert result.account.id == account_id
    assert result.account.user_handle == user_handle
    assert result.account.is_admin is True
    assert SessionIssuer().verify(result.token).is_admin is True

    assert await db.scalar(select(func.count(Account.id))) == 1
    assert await _passkeys(db, account_id) == 1
    events = await db.execute(select(Event).where(Event.type == "account.reregistered"))
    assert len(events.scalars().all()) == 1

    await login_via_service(ceremony, fresh, account.email)
    with pytest.raises(CeremonyError):
        await login_via_service(ceremony, old_authenticator, account.email)

    # Passkeys are back, so the email is taken again.
    with pytest.raises(DuplicateAccount):
        await ceremony.begin_registration(account.email)


@pytest.mark.asyncio
async def test_reregister_challenge_loses_to_earlier_one(db, recovery, outbox, traveler):
    """Two re-registration ceremonies started together: only the first attaches."""
    account, _ = traveler
    await recovery.request(account.email)
    await recovery.verify(account.email, outbox.last_code())

    svc = CeremonyService(db, issuer=SessionIssuer())
    first = await svc.begin_registration(account.email)
    second = await svc.begin_registration(account.email)

    await svc.verify_registration(
        first.challenge_id, attestation(SoftAuthenticator().create(first.options))
    )
    with pytest.raises(DuplicateAccount):
        await svc.verify_registration(
            second.challenge_id, attestation(SoftAuthenticator().create(second.options))
        )
    assert await _passkeys(db, account.id) == 1


# ═══════════════════════════════════════════════════════════
# Notifiers
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_telegram_notifier_posts_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = TelegramNotifier("bot-token", "42", transport=httpx.MockTransport(handler))
    assert await notifier.send("hello") is True

    (request,) = seen
    assert request.url.path == "/botbot-token/sendMessage"
    assert json.loads(request.content) == {
        "chat_id": "42", "text": "hello", "parse_mode": "HTML",
    }


@pytest.mark.asyncio
async def test_telegram_notifier_failures_return_false():
    rejected = TelegramNotifier(
        "t", "1", transport=httpx.MockTransport(lambda r: httpx.Response(403))
    )
    assert await rejected.send("x") is False

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    down = TelegramNotifier("t", "1", transport=httpx.MockTransport(unreachable))
    assert await down.send("x") is False


@pytest.mark.asyncio
async def test_default_notifier_follows_settings(monkeypatch):
    monkeypatch.setattr(notifier_module.settings, "telegram_bot_token", None)
    monkeypatch.setattr(notifier_module.settings, "telegram_chat_id", None)
    log = notifier_module.default_notifier()
    assert isinstance(log, LogNotifier)
    assert await log.send("x") is False

    monkeypatch.setattr(notifier_module.settings, "telegram_bot_token", "t")
    monkeypatch.setattr(notifier_module.settings, "telegram_chat_id", "1")
    assert isinstance(notifier_module.default_notifier(), TelegramNotifier)


# ═══════════════════════════════════════════════════════════
# HTTP
# ═══════════════════════════════════════════════════════════


@pytest.fixture()
def api_outbox(client):
    box = Outbox()
    app.dependency_overrides[get_notifier] = lambda: box
    return box


@pytest.mark.asyncio
async def test_recovery_request_same_answer_for_any_email(client, admin, api_outbox):
    answers = []
    for email in ("admin@example.com", "ghost@example.com", "not an email"):
        r = await client.post("/api/v1/auth/recovery/request", json={"email": email})
        assert r.status_code == 200
        answers.append(r.json())
    assert answers[0] == answers[1] == answers[2]
    assert answers[0]["success"] is True
    assert len(api_outbox.sent) == 1


@pytest.mark.asyncio
async def test_recovery_over_http(client, admin, api_outbox):
    session, _, headers = admin
    r = await client.post("/api/v1/auth/register/options", json={"email": "admin@example.com"})
    assert r.status_code == 409

    await client.post("/api/v1/auth/recovery/request", json={"email": "admin@example.com"})
    code = api_outbox.last_code()
    wrong = "000000" if code != "000000" else "111111"

    r = await client.post(
        "/api/v1/auth/recovery/verify", json={"email": "admin@example.com", "code": wrong}
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid code. 4 attempts remaining."

    r = await client.post(
        "/api/v1/auth/recovery/verify", json={"email": "admin@example.com", "code": code}
    )
    assert r.status_code == 200
    assert r.json()["redirect_to"] == "/register"

    r = await client.get("/api/v1/auth/passkeys", headers=headers)
    assert r.json() == []

    fresh = SoftAuthenticator("ed25519")
    again = await register_via_api(client, fresh, "admin@example.com")
    assert again["account"]["id"] == session["account"]["id"]
    assert again["account"]["is_admin"] is True

    r = await login_via_api(client, fresh, "admin@example.com")
    assert r.status_code == 200
    r = await client.get("/api/v1/auth/me", headers=bearer(r.json()["token"]))
    assert r.json()["email"] == "admin@example.com"


@pytest.mark.asyncio
async def test_recovery_verify_without_code(client, admin, api_outbox):
    r = await client.post(
        "/api/v1/auth/recovery/verify", json={"email": "admin@example.com", "code": "123456"}
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid or expired code"
