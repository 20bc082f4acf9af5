"""Test fixtures — a fresh SQLite database file per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI + aiosqlite:

1. Each test gets its own database file under pytest's tmp_path, with the
   schema and bootstrap row created by init_db().
2. Services commit for real. Isolation comes from the throwaway file,
   not from savepoints, because the concurrency tests need several
   independent sessions racing on the same database.
3. The HTTP client overrides get_db so every request opens its own
   session on that file, just like production.

Env vars are set before anything imports tripgate.config, so the global
engine (used by /health and the CLI) points at a scratch file too.
"""

import os
import tempfile

_SCRATCH = tempfile.mkdtemp(prefix="tripgate-tests-")
os.environ.setdefault("TRIPGATE_DATABASE_URL", f"sqlite+aiosqlite:///{_SCRATCH}/app.db")
os.environ.setdefault("TRIPGATE_JWT_SECRET", "test-secret-not-for-production")

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from tripgate.auth.jwt import SessionIssuer  # noqa: E402
from tripgate.db import engine as engine_module  # noqa: E402
from tripgate.db.engine import build_engine, get_db, init_db  # noqa: E402
from tripgate.main import app  # noqa: E402
from tripgate.services.ceremony_service import CeremonyService  # noqa: E402

from soft_authenticator import SoftAuthenticator, bearer, register_via_api  # noqa: E402


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """Per-test database file with tables + the admin_assignment row."""
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tripgate.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db(session_factory):
    """One session for service-level tests."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def ceremony(db):
    return CeremonyService(db, issuer=SessionIssuer())


@pytest_asyncio.fixture()
async def client(session_factory):
    """HTTP client with get_db pointed at the per-test database.

    Learn: Auth is NOT overridden. Tests register through the real
    passkey ceremony with a SoftAuthenticator and send the real token.
    """

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    # /health uses the global engine; drop its connections before the loop closes.
    await engine_module.engine.dispose()


@pytest_asyncio.fixture()
async def admin(client):
    """The first registered account, which bootstrap makes admin.

    Returns (session JSON, authenticator, auth headers).
    """
    authenticator = SoftAuthenticator()
    session = await register_via_api(client, authenticator, "admin@example.com", "Admin")
    assert session["account"]["is_admin"] is True
    return session, authenticator, bearer(session["token"])


@pytest_asyncio.fixture()
async def member(client, admin):
    """A second, non-admin account."""
    authenticator = SoftAuthenticator("ed25519")
    session = await register_via_api(client, authenticator, "member@example.com", "Member")
    assert session["account"]["is_admin"] is False
    return session, authenticator, bearer(session["token"])


@pytest_asyncio.fixture()
async def trips(client, admin):
    """Two trips created by the admin: (iceland, japan) JSON."""
    _, _, headers = admin
    created = []
    for slug, title in (("iceland-2024", "Iceland 2024"), ("japan-2025", "Japan 2025")):
        r = await client.post(
            "/api/v1/trips", json={"slug": slug, "title": title}, headers=headers
        )
        assert r.status_code == 201, r.text
        created.append(r.json())
    return tuple(created)
