"""Trip + trip-access API tests.

Learn: GET /trips/:ref is the end-to-end check of require_trip_access:
unknown trip → 404, no grant → 403, any grant (or admin) → 200.
"""

import uuid

import pytest


async def _grant(client, headers, account_id, trip_id, role="viewer"):
    r = await client.post(
        "/api/v1/trip-access",
        json={"account_id": account_id, "trip_id": trip_id, "role": role},
        headers=headers,
    )
    assert r.status_code == 201, r.text
    return r.json()


# ═══════════════════════════════════════════════════════════
# Trips
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_trip_admin_only(client, admin, member):
    _, _, member_headers = member
    r = await client.post(
        "/api/v1/trips", json={"slug": "mine", "title": "Mine"}, headers=member_headers
    )
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_create_trip_validation(client, admin, trips):
    _, _, headers = admin
    r = await client.post(
        "/api/v1/trips", json={"slug": "iceland-2024", "title": "Again"}, headers=headers
    )
    assert r.status_code == 409

    r = await client.post(
        "/api/v1/trips", json={"slug": "Not A Slug", "title": "Bad"}, headers=headers
    )
    assert r.status_code == 422

    r = await client.post(
        "/api/v1/trips", json={"slug": str(uuid.uuid4()), "title": "Sneaky"}, headers=headers
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_admin_sees_every_trip(client, admin, trips):
    _, _, headers = admin
    r = await client.get("/api/v1/trips", headers=headers)
    assert r.status_code == 200
    assert [t["slug"] for t in r.json()] == ["iceland-2024", "japan-2025"]
    assert all(t["role"] is None for t in r.json())

    r = await client.get(f"/api/v1/trips/{trips[1]['id']}", headers=headers)
    assert r.status_code == 200
    assert r.json()["slug"] == "japan-2025"


@pytest.mark.asyncio
async def test_member_access_via_grant(client, admin, member, trips):
    _, _, admin_headers = admin
    member_session, _, member_headers = member
    iceland, japan = trips

    assert (await client.get("/api/v1/trips", headers=member_headers)).json() == []
    r = await client.get(f"/api/v1/trips/{iceland['slug']}", headers=member_headers)
    assert r.status_code == 403
    assert r.json()["detail"] == "Access denied"

    await _grant(client, admin_headers, member_session["account"]["id"], iceland["id"])

    r = await client.get("/api/v1/trips", headers=member_headers)
    assert [(t["slug"], t["role"]) for t in r.json()] == [("iceland-2024", "viewer")]
    r = await client.get(f"/api/v1/trips/{iceland['id']}", headers=member_headers)
    assert r.status_code == 200
    r = await client.get(f"/api/v1/trips/{japan['slug']}", headers=member_headers)
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_unknown_trip_is_404(client, admin, member):
    _, _, headers = member
    r = await client.get("/api/v1/trips/nowhere", headers=headers)
    assert r.status_code == 404
    r = await client.get(f"/api/v1/trips/{uuid.uuid4()}", headers=headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_trips_require_auth(client):
    assert (await client.get("/api/v1/trips")).status_code == 401
    assert (await client.get("/api/v1/trips/anything")).status_code == 401


# ═══════════════════════════════════════════════════════════
# Trip access management
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_grant_update_revoke_cycle(client, admin, member, trips):
    _, _, admin_headers = admin
    member_session, _, member_headers = member
    member_id = member_session["account"]["id"]
    iceland, _ = trips

    grant = await _grant(client, admin_headers, member_id, iceland["id"], role="viewer")
    assert grant["granted_by_account_id"] == admin[0]["account"]["id"]

    r = await client.get(f"/api/v1/trips/{iceland['slug']}/access", headers=admin_headers)
    assert r.status_code == 200
    (row,) = r.json()
    assert row["email"] == "member@example.com"
    assert row["display_name"] == "Member"

    r = await client.patch(
        f"/api/v1/trip-access/{grant['id']}", json={"role": "editor"}, headers=admin_headers
    )
    assert r.status_code == 200
    assert r.json()["role"] == "editor"

    r = await client.delete(f"/api/v1/trip-access/{grant['id']}", headers=admin_headers)
    assert r.json() == {"revoked": True}
    r = await client.get(f"/api/v1/trips/{iceland['slug']}", headers=member_headers)
    assert r.status_code == 403

    r = await client.delete(f"/api/v1/trip-access/{grant['id']}", headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_grant_conflicts(client, admin, member, trips):
    admin_session, _, admin_headers = admin
    member_session, _, _ = member
    iceland, _ = trips
    await _grant(client, admin_headers, member_session["account"]["id"], iceland["id"])

    r = await client.post(
        "/api/v1/trip-access",
        json={"account_id": member_session["account"]["id"], "trip_id": iceland["id"]},
        headers=admin_headers,
    )
    assert r.status_code == 409

    r = await client.post(
        "/api/v1/trip-access",
        json={"account_id": admin_session["account"]["id"], "trip_id": iceland["id"]},
        headers=admin_headers,
    )
    assert r.status_code == 409

    r = await client.post(
        "/api/v1/trip-access",
        json={"account_id": str(uuid.uuid4()), "trip_id": iceland["id"]},
        headers=admin_headers,
    )
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_access_management_is_admin_only(client, admin, member, trips):
    member_session, _, member_headers = member
    r = await client.post(
        "/api/v1/trip-access",
        json={"account_id": member_session["account"]["id"], "trip_id": trips[0]["id"]},
        headers=member_headers,
    )
    assert r.status_code == 403
    assert (await client.get("/api/v1/users", headers=member_headers)).status_code == 403


@pytest.mark.asyncio
async def test_list_users(client, admin, member):
    _, _, headers = admin
    r = await client.get("/api/v1/users", headers=headers)
    assert [(u["email"], u["is_admin"]) for u in r.json()] == [
        ("admin@example.com", True),
        ("member@example.com", False),
    ]
