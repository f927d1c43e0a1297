"""
tests/test_auth.py

Bearer-token authentication and the profile endpoints.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from conftest import TEST_PASSWORD, auth_headers, make_user
from medcenter.security import create_access_token, hash_password, verify_password


def test_password_hashing():
    hashed = hash_password("s3cret")
    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("s3cret", "not-a-hash")


async def test_missing_token(anon_client):
    resp = await anon_client.get("/api/patients")
    assert resp.status_code == 401
    assert resp.json()["error"] == "MISSING_TOKEN"
    assert resp.headers["www-authenticate"] == "Bearer"


async def test_garbage_token(anon_client):
    resp = await anon_client.get("/api/patients", headers={"Authorization": "Bearer not.a.jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "TOKEN_INVALID"


async def test_expired_token_is_distinguishable(anon_client, user, settings):
    issued = datetime.now(timezone.utc) - timedelta(hours=settings.JWT_EXPIRE_HOURS + 1)
    token = create_access_token(user.id, settings, now=issued)

    resp = await anon_client.get("/api/patients", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "TOKEN_EXPIRED"


async def test_token_signed_with_other_secret(anon_client, user, settings):
    forged = settings.model_copy(update={"JWT_SECRET": "someone-else"})
    token = create_access_token(user.id, forged)

    resp = await anon_client.get("/api/patients", headers={"Authorization": f"Bearer {token}"})
    assert resp.json()["error"] == "TOKEN_INVALID"


async def test_token_for_unknown_user(anon_client, settings):
    token = create_access_token(uuid.uuid4(), settings)
    resp = await anon_client.get("/api/patients", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "TOKEN_INVALID"


async def test_inactive_user_is_rejected(anon_client, session_factory, settings):
    inactive = await make_user(session_factory, email="former@example.com", active=False)
    resp = await anon_client.get("/api/patients", headers=auth_headers(inactive, settings))
    assert resp.status_code == 401
    assert resp.json()["error"] == "USER_INACTIVE"


async def test_login(anon_client, user):
    resp = await anon_client.post("/api/auth/login", json={"email": "Owner@Example.com", "password": TEST_PASSWORD})
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["user"]["email"] == "owner@example.com"

    profile = await anon_client.get("/api/auth/profile", headers={"Authorization": f"Bearer {data['token']}"})
    assert profile.json()["data"]["last_login_at"] is not None


async def test_login_wrong_password(anon_client, user):
    resp = await anon_client.post("/api/auth/login", json={"email": "owner@example.com", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "INVALID_CREDENTIALS"


async def test_profile_update_and_email_conflict(client, session_factory):
    await make_user(session_factory, email="taken@example.com")

    ok = await client.put("/api/auth/profile", json={"name": "Dra. Owner"})
    assert ok.status_code == 200
    assert ok.json()["data"]["name"] == "Dra. Owner"

    clash = await client.put("/api/auth/profile", json={"email": "TAKEN@example.com"})
    assert clash.status_code == 409
    assert clash.json()["error"] == "EMAIL_TAKEN"


async def test_password_change(client, anon_client):
    wrong = await client.put(
        "/api/auth/password",
        json={"current_password": "bad", "new_password": "another-secret"},
    )
    assert wrong.status_code == 400
    assert wrong.json()["error"] == "INVALID_PASSWORD"

    ok = await client.put(
        "/api/auth/password",
        json={"current_password": TEST_PASSWORD, "new_password": "another-secret"},
    )
    assert ok.status_code == 200

    login = await anon_client.post(
        "/api/auth/login",
        json={"email": "owner@example.com", "password": "another-secret"},
    )
    assert login.status_code == 200
