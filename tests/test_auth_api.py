from datetime import timedelta

import pytest
from jose import jwt

import auth
from conftest import PASSWORD, bearer, register
from models import UserSession


def test_register_returns_session(client):
    data = register(client, "alice")
    assert data["user"]["username"] == "alice"
    assert data["user"]["email"] == "alice@example.com"
    assert "password_hash" not in data["user"]
    assert data["token_type"] == "bearer"

    resp = client.get("/api/auth/profile", headers=bearer(data["token"]))
    assert resp.status_code == 200
    profile = resp.json()["data"]
    assert profile["has_valid_subscription"] is False
    assert profile["subscription"] is None
    assert profile["is_admin"] is False


def test_only_token_hash_is_stored(client, db):
    token = register(client, "alice")["token"]
    stored = db.query(UserSession).one()
    assert stored.token_hash == auth.hash_token(token)
    assert token not in stored.token_hash


@pytest.mark.parametrize("body,code", [
    ({"username": "al", "email": "al@example.com"}, "INVALID_USERNAME"),
    ({"username": "bad name", "email": "bad@example.com"}, "INVALID_USERNAME"),
    ({"username": "bob", "email": "bob@example.com", "password": "short1A"}, "WEAK_PASSWORD"),
    ({"username": "bob", "email": "bob@example.com", "password": "alllowercase1"}, "WEAK_PASSWORD"),
    ({"username": "bob", "email": "bob@example.com", "confirm_password": "Different1"}, "PASSWORD_MISMATCH"),
    ({"username": "bob", "email": "not-an-email"}, "VALIDATION_ERROR"),
])
def test_register_validation(client, body, code):
    payload = {"password": PASSWORD, "confirm_password": body.get("password", PASSWORD), **body}
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert resp.json()["error"] == code


def test_register_duplicates(client):
    register(client, "alice")
    resp = client.post("/api/auth/register", json={
        "username": "alice2", "email": "ALICE@example.com", "password": PASSWORD, "confirm_password": PASSWORD,
    })
    assert (resp.status_code, resp.json()["error"]) == (409, "EMAIL_EXISTS")

    resp = client.post("/api/auth/register", json={
        "username": "alice", "email": "other@example.com", "password": PASSWORD, "confirm_password": PASSWORD,
    })
    assert (resp.status_code, resp.json()["error"]) == (409, "USERNAME_EXISTS")


def test_login_by_username_or_email(client):
    register(client, "alice")
    for login in ("alice", "alice@example.com", "Alice@Example.com"):
        resp = client.post("/api/auth/login", json={"login": login, "password": PASSWORD})
        assert resp.status_code == 200, login
        assert resp.json()["data"]["user"]["username"] == "alice"


def test_login_rejects_bad_credentials(client):
    register(client, "alice")
    for body in ({"login": "alice", "password": "Wrong1234"}, {"login": "nobody", "password": PASSWORD}):
        resp = client.post("/api/auth/login", json=body)
        assert resp.status_code == 401
        assert resp.json()["error"] == "INVALID_CREDENTIALS"


def test_missing_and_garbage_tokens(client):
    resp = client.get("/api/auth/profile")
    assert (resp.status_code, resp.json()["error"]) == (401, "NO_TOKEN")
    resp = client.get("/api/auth/profile", headers=bearer("not-a-jwt"))
    assert (resp.status_code, resp.json()["error"]) == (401, "INVALID_TOKEN")


def test_forged_token_without_session_is_rejected(client):
    user = register(client, "alice")["user"]
    forged = jwt.encode({"sub": str(user["id"]), "jti": "made-up", "iss": auth.JWT_ISSUER,
                         "exp": auth.utcnow() + timedelta(days=1)}, auth.JWT_SECRET, algorithm=auth.JWT_ALG)
    resp = client.get("/api/auth/profile", headers=bearer(forged))
    assert resp.status_code == 401


def test_expired_session_is_rejected(client, db):
    token = register(client, "alice")["token"]
    session = db.query(UserSession).one()
    session.expires_at = auth.utcnow() - timedelta(seconds=1)
    db.commit()
    resp = client.get("/api/auth/profile", headers=bearer(token))
    assert (resp.status_code, resp.json()["error"]) == (401, "INVALID_TOKEN")


def test_logout_revokes_token(client):
    token = register(client, "alice")["token"]
    assert client.post("/api/auth/logout", headers=bearer(token)).status_code == 200
    assert client.get("/api/auth/profile", headers=bearer(token)).status_code == 401


def test_profile_update(client):
    token = register(client, "alice")["token"]
    resp = client.put("/api/auth/profile", headers=bearer(token), json={"username": "alice_w"})
    assert resp.status_code == 200
    assert resp.json()["data"]["username"] == "alice_w"

    resp = client.put("/api/auth/profile", headers=bearer(token), json={"password": "NewPassw0rd"})
    assert (resp.status_code, resp.json()["error"]) == (400, "CURRENT_PASSWORD_REQUIRED")
    resp = client.put("/api/auth/profile", headers=bearer(token),
                      json={"password": "NewPassw0rd", "current_password": "Wrong1234"})
    assert (resp.status_code, resp.json()["error"]) == (401, "INVALID_CURRENT_PASSWORD")
    resp = client.put("/api/auth/profile", headers=bearer(token),
                      json={"password": "NewPassw0rd", "current_password": PASSWORD})
    assert resp.status_code == 200

    resp = client.post("/api/auth/login", json={"login": "alice_w", "password": "NewPassw0rd"})
    assert resp.status_code == 200


def test_profile_update_conflicts(client):
    register(client, "bob")
    token = register(client, "alice")["token"]
    resp = client.put("/api/auth/profile", headers=bearer(token), json={"email": "bob@example.com"})
    assert (resp.status_code, resp.json()["error"]) == (409, "EMAIL_EXISTS")
