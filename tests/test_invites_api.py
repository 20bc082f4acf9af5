"""Invite API tests — admin creation/listing/revocation, member redemption."""

import uuid

import pytest

from soft_authenticator import SoftAuthenticator, bearer, register_via_api


async def _invite(client, headers, trip_ids, **extra):
    r = await client.post(
        "/api/v1/invites", json={"trip_ids": trip_ids, **extra}, headers=headers
    )
    assert r.status_code == 201, r.text
    return r.json()


# ═══════════════════════════════════════════════════════════
# Admin side
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_and_list_invite(client, admin, trips):
    _, _, headers = admin
    iceland, japan = trips
    created = await _invite(
        client, headers, [iceland["id"], japan["id"]], role="editor", expires_in_days=3
    )
    assert created["role"] == "editor"
    assert created["trip_ids"] == [iceland["id"], japan["id"]]
    assert len(created["code"]) == 32

    r = await client.get("/api/v1/invites", headers=headers)
    assert r.status_code == 200
    (listed,) = r.json()
    assert listed["status"] == "pending"
    assert listed["trip_count"] == 2


@pytest.mark.asyncio
async def test_create_invite_requires_admin(client, member, trips):
    _, _, headers = member
    r = await client.post(
        "/api/v1/invites", json={"trip_ids": [trips[0]["id"]]}, headers=headers
    )
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_create_invite_validation(client, admin, trips):
    _, _, headers = admin
    r = await client.post("/api/v1/invites", json={"trip_ids": []}, headers=headers)
    assert r.status_code == 400

    r = await client.post(
        "/api/v1/invites", json={"trip_ids": [str(uuid.uuid4())]}, headers=headers
    )
    assert r.status_code == 404

    r = await client.post(
        "/api/v1/invites",
        json={"trip_ids": [trips[0]["id"]], "expires_in_days": 365},
        headers=headers,
    )
    assert r.status_code == 422

    r = await client.post(
        "/api/v1/invites",
        json={"trip_ids": [trips[0]["id"]], "role": "owner"},
        headers=headers,
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_duplicate_pending_email_invite(client, admin, trips):
    _, _, headers = admin
    await _invite(client, headers, [trips[0]["id"]], email="guest@example.com")
    r = await client.post(
        "/api/v1/invites",
        json={"trip_ids": [trips[1]["id"]], "email": "GUEST@example.com"},
        headers=headers,
    )
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_revoke_invite(client, admin, trips):
    _, _, headers = admin
    created = await _invite(client, headers, [trips[0]["id"]])

    r = await client.delete(f"/api/v1/invites/{created['id']}", headers=headers)
    assert r.status_code == 200
    assert r.json() == {"revoked": True}

    r = await client.delete(f"/api/v1/invites/{created['id']}", headers=headers)
    assert r.status_code == 409
    r = await client.delete(f"/api/v1/invites/{uuid.uuid4()}", headers=headers)
    assert r.status_code == 404

    r = await client.get("/api/v1/invites", headers=headers)
    assert r.json()[0]["status"] == "revoked"


# ═══════════════════════════════════════════════════════════
# Redemption
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_redeem_grants_access(client, admin, member, trips):
    _, _, admin_headers = admin
    member_session, _, member_headers = member
    iceland, japan = trips
    created = await _invite(client, admin_headers, [iceland["id"], japan["id"]], role="editor")

    r = await client.get(f"/api/v1/trips/{iceland['slug']}", headers=member_headers)
    assert r.status_code == 403

    r = await client.post(
        "/api/v1/invites/redeem", json={"code": created["code"]}, headers=member_headers
    )
    assert r.status_code == 200
    grants = r.json()["grants"]
    assert {g["trip_id"] for g in grants} == {iceland["id"], japan["id"]}
    assert all(g["role"] == "editor" for g in grants)
    assert all(g["account_id"] == member_session["account"]["id"] for g in grants)

    r = await client.get(f"/api/v1/trips/{iceland['slug']}", headers=member_headers)
    assert r.status_code == 200
    assert r.json()["role"] == "editor"


@pytest.mark.asyncio
async def test_second_redeemer_gets_409(client, admin, member, trips):
    _, _, admin_headers = admin
    _, _, member_headers = member
    created = await _invite(client, admin_headers, [trips[0]["id"]])

    r = await client.post(
        "/api/v1/invites/redeem", json={"code": created["code"]}, headers=member_headers
    )
    assert r.status_code == 200

    other = await register_via_api(client, SoftAuthenticator(), "late@example.com")
    r = await client.post(
        "/api/v1/invites/redeem",
        json={"code": created["code"]},
        headers=bearer(other["token"]),
    )
    assert r.status_code == 409
    assert r.json()["detail"] == "Invite has already been used"

    r = await client.get("/api/v1/trips", headers=bearer(other["token"]))
    assert r.json() == []


@pytest.mark.asyncio
async def test_unknown_and_mismatched_codes_look_the_same(client, admin, member, trips):
    _, _, admin_headers = admin
    _, _, member_headers = member
    bound = await _invite(client, admin_headers, [trips[0]["id"]], email="someone@example.com")

    unknown = await client.post(
        "/api/v1/invites/redeem", json={"code": "no-such-code"}, headers=member_headers
    )
    mismatch = await client.post(
        "/api/v1/invites/redeem", json={"code": bound["code"]}, headers=member_headers
    )
    assert unknown.status_code == mismatch.status_code == 404
    assert unknown.json() == mismatch.json() == {"detail": "Invalid or expired invite"}


@pytest.mark.asyncio
async def test_redeem_requires_auth(client, admin, trips):
    _, _, headers = admin
    created = await _invite(client, headers, [trips[0]["id"]])
    r = await client.post("/api/v1/invites/redeem", json={"code": created["code"]})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_redeemed_invite_shows_used(client, admin, member, trips):
    _, _, admin_headers = admin
    member_session, _, member_headers = member
    created = await _invite(client, admin_headers, [trips[0]["id"]])
    await client.post(
        "/api/v1/invites/redeem", json={"code": created["code"]}, headers=member_headers
    )

    r = await client.get("/api/v1/invites", headers=admin_headers)
    (listed,) = r.json()
    assert listed["status"] == "used"
    assert listed["redeemed_by_account_id"] == member_session["account"]["id"]
