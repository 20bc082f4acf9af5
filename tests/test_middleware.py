"""Tests for middleware — security headers, request IDs, rate limiting.

Learn: Rate limiting normally skips in tests (no Redis available), so the
rate limit tests swap in a small in-memory counter with the two Redis
calls the middleware makes.
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from tripgate.middleware import rate_limit


@pytest.mark.asyncio
async def test_security_headers_on_health(client):
    """Health endpoint returns security headers."""
    r = await client.get("/api/v1/health")
    assert r.status_code == 200
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert r.headers["Referrer-Policy"] == "no-referrer"
    assert "Cache-Control" not in r.headers


@pytest.mark.asyncio
async def test_auth_responses_not_cached(client):
    r = await client.get("/api/v1/auth/registration-status")
    assert r.headers["Cache-Control"] == "no-store"


@pytest.mark.asyncio
async def test_request_id_generated(client):
    """Each request gets a unique X-Request-ID header."""
    r1 = await client.get("/api/v1/health")
    r2 = await client.get("/api/v1/health")
    assert "X-Request-ID" in r1.headers
    assert "X-Request-ID" in r2.headers
    # Each request gets a unique ID
    assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_propagated(client):
    """Incoming X-Request-ID is propagated through the response."""
    custom_id = "test-trace-12345"
    r = await client.get(
        "/api/v1/health",
        headers={"X-Request-ID": custom_id},
    )
    assert r.headers["X-Request-ID"] == custom_id


@pytest.mark.asyncio
async def test_unsafe_request_id_replaced(client):
    r = await client.get("/api/v1/health", headers={"X-Request-ID": "bad id\twith junk"})
    assert r.headers["X-Request-ID"] != "bad id\twith junk"
    assert len(r.headers["X-Request-ID"]) == 36


@pytest.mark.asyncio
async def test_no_hsts_on_http(client):
    """HSTS header is NOT set on HTTP connections (only HTTPS)."""
    r = await client.get("/api/v1/health")
    assert "Strict-Transport-Security" not in r.headers


# ═══════════════════════════════════════════════════════════
# Rate limiting
# ═══════════════════════════════════════════════════════════


class CountingRedis:
    """Just enough of redis.asyncio.Redis for the rate limiter."""

    def __init__(self):
        self.counts: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True


@pytest.fixture()
def fake_redis(monkeypatch):
    fake = CountingRedis()
    monkeypatch.setattr(rate_limit, "get_redis", lambda: fake)
    return fake


def _limited_app(**kwargs) -> FastAPI:
    """A bare app behind the rate limiter, pinned to one minute window."""
    app = FastAPI()

    @app.post("/api/v1/auth/login/options")
    async def login_options():
        return {"ok": True}

    @app.post("/api/v1/auth/passkeys/options")
    async def passkey_options():
        return {"ok": True}

    @app.post("/api/v1/auth/recovery/verify")
    async def recovery_verify():
        return {"ok": True}

    @app.get("/api/v1/health")
    async def health():
        return {"ok": True}

    app.add_middleware(rate_limit.RateLimitMiddleware, clock=lambda: 600.0, **kwargs)
    return app


async def _limited_client(**kwargs) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=_limited_app(**kwargs)), base_url="http://test")


@pytest.mark.asyncio
async def test_ceremony_endpoints_have_stricter_limit(fake_redis):
    async with await _limited_client(default_rpm=50, auth_rpm=3) as c:
        for _ in range(3):
            r = await c.post("/api/v1/auth/login/options")
            assert r.status_code == 200
            assert r.headers["X-RateLimit-Limit"] == "3"

        r = await c.post("/api/v1/auth/login/options")
        assert r.status_code == 429
        assert r.headers["Retry-After"] == "60"

        # The general bucket is separate.
        r = await c.get("/api/v1/health")
        assert r.status_code == 200
        assert r.headers["X-RateLimit-Limit"] == "50"
        assert r.headers["X-RateLimit-Remaining"] == "49"

    assert set(fake_redis.counts) == {
        "tripgate:rl:127.0.0.1:auth:10",
        "tripgate:rl:127.0.0.1:api:10",
    }
    assert all(ttl == 120 for ttl in fake_redis.ttls.values())


@pytest.mark.asyncio
async def test_rate_limit_skipped_without_redis(monkeypatch):
    monkeypatch.setattr(rate_limit, "get_redis", lambda: None)
    async with await _limited_client(auth_rpm=1) as c:
        for _ in range(3):
            r = await c.post("/api/v1/auth/login/options")
            assert r.status_code == 200
            assert "X-RateLimit-Limit" not in r.headers


@pytest.mark.asyncio
async def test_passkey_and_recovery_endpoints_share_auth_bucket(fake_redis):
    async with await _limited_client(default_rpm=50, auth_rpm=2) as c:
        r = await c.post("/api/v1/auth/passkeys/options")
        assert r.headers["X-RateLimit-Limit"] == "2"
        r = await c.post("/api/v1/auth/recovery/verify")
        assert r.headers["X-RateLimit-Limit"] == "2"
        assert r.headers["X-RateLimit-Remaining"] == "0"

        r = await c.post("/api/v1/auth/passkeys/options")
        assert r.status_code == 429

    assert set(fake_redis.counts) == {"tripgate:rl:127.0.0.1:auth:10"}
