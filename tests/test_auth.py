from datetime import timedelta
from types import SimpleNamespace

import pytest

from auth import create_session_token, verify_token
from config import Settings
from errors import Unauthorized
from conftest import signup, login_headers, set_role


def test_signup_and_login_round_trip(client):
    body = signup(client, "bob@example.com", full_name="Bob Builder")
    assert body["user"]["email"] == "bob@example.com"
    assert body["user"]["role"] == "user"
    assert body["user"]["username"].startswith("bob")

    r = client.post("/api/auth/login", json={"email": "BOB@example.com", "password": "password123"})
    assert r.status_code == 200
    assert r.json()["user"]["username"] == body["user"]["username"]
    assert "token" in r.cookies

    # The cookie alone authenticates
    me = client.get("/api/auth/me")
    assert me.status_code == 200
    data = me.json()
    assert data["email"] == "bob@example.com"
    assert data["full_name"] == "Bob Builder"
    assert "hashed_password" not in data


def test_duplicate_signup_conflicts(client):
    signup(client, "dup@example.com")
    r = client.post("/api/auth/signup", json={"email": "dup@example.com", "password": "password123", "fullName": "Again"})
    assert r.status_code == 409
    assert r.json()["error"] == "Conflict"


def test_signup_validation_is_400(client):
    r = client.post("/api/auth/signup", json={"email": "not-an-email", "password": "password123", "fullName": "X"})
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


def test_unknown_email_and_wrong_password_fail_identically(client):
    signup(client, "carol@example.com")

    wrong_password = client.post("/api/auth/login", json={"email": "carol@example.com", "password": "nope-nope"})
    unknown_email = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "nope-nope"})

    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json()


def test_suspended_user_cannot_log_in(client, admin_headers):
    body = signup(client, "dave@example.com")
    user_id = body["user"]["id"]

    r = client.patch(f"/api/admin/users/{user_id}", json={"status": "suspended"}, headers=admin_headers)
    assert r.status_code == 200

    r = client.post("/api/auth/login", json={"email": "dave@example.com", "password": "password123"})
    assert r.status_code == 403
    assert r.json()["error"] == "AccountSuspended"

    # A wrong password never reveals the suspension
    r = client.post("/api/auth/login", json={"email": "dave@example.com", "password": "wrong-pass"})
    assert r.status_code == 401


def test_suspension_revokes_existing_session(client, admin_headers):
    body = signup(client, "erin@example.com")
    headers = login_headers(client, "erin@example.com")
    assert client.get("/api/profiles", headers=headers).status_code == 200

    client.patch(f"/api/admin/users/{body['user']['id']}", json={"status": "suspended"}, headers=admin_headers)
    assert client.get("/api/profiles", headers=headers).status_code == 403


def test_token_round_trip(settings):
    user = SimpleNamespace(id=7, email="x@example.com", role="sub-admin")
    payload = verify_token(create_session_token(user, settings), settings)
    assert payload["userId"] == 7
    assert payload["email"] == "x@example.com"
    assert payload["role"] == "sub-admin"
    assert "exp" in payload


def test_expired_and_tampered_tokens_rejected(settings):
    user = SimpleNamespace(id=7, email="x@example.com", role="user")
    expired = create_session_token(user, settings, expires_delta=timedelta(seconds=-10))
    with pytest.raises(Unauthorized):
        verify_token(expired, settings)

    forged = create_session_token(user, Settings(SECRET_KEY="someone-else"))
    with pytest.raises(Unauthorized):
        verify_token(forged, settings)
    with pytest.raises(Unauthorized):
        verify_token(None, settings)


def test_protected_routes_need_a_session(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/profiles").status_code == 401
    r = client.get("/api/qr-codes", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401
    assert r.json()["error"] == "Unauthorized"


def test_logout_clears_cookie(client):
    signup(client, "frank@example.com")
    client.post("/api/auth/login", json={"email": "frank@example.com", "password": "password123"})
    assert client.get("/api/auth/me").status_code == 200

    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert "token=" in r.headers["set-cookie"]
    assert client.get("/api/auth/me").status_code == 401

    r = client.get("/api/auth/logout", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/"


def test_update_password(client):
    signup(client, "gina@example.com")
    headers = login_headers(client, "gina@example.com")

    r = client.post(
        "/api/auth/update-password",
        json={"currentPassword": "wrong-one", "newPassword": "newpass456"},
        headers=headers,
    )
    assert r.status_code == 400

    r = client.post(
        "/api/auth/update-password",
        json={"currentPassword": "password123", "newPassword": "newpass456"},
        headers=headers,
    )
    assert r.status_code == 200
    login_headers(client, "gina@example.com", "newpass456")


def test_invitation_is_single_use(client, admin_headers):
    r = client.post("/api/admin/users", json={"email": "invitee@example.com"}, headers=admin_headers)
    assert r.status_code == 201
    body = r.json()
    assert body["user"]["status"] == "pending"
    token = body["invitation_token"]
    assert token

    # Pending accounts cannot log in yet
    r = client.post("/api/auth/login", json={"email": "invitee@example.com", "password": "anything1"})
    assert r.status_code == 401

    r = client.post("/api/auth/invite/accept", json={"token": token, "password": "welcome123"})
    assert r.status_code == 200

    r = client.post("/api/auth/invite/accept", json={"token": token, "password": "another123"})
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidOrExpiredToken"

    headers = login_headers(client, "invitee@example.com", "welcome123")
    profiles = client.get("/api/profiles", headers=headers).json()
    assert len(profiles) == 1


def test_sub_admin_permissions(client, admin_headers):
    signup(client, "helper@example.com")
    set_role(client, "helper@example.com", "sub-admin", ["users.read"])
    headers = login_headers(client, "helper@example.com")

    assert client.get("/api/admin/users", headers=headers).status_code == 200
    r = client.post("/api/admin/users", json={"email": "x@example.com"}, headers=headers)
    assert r.status_code == 403
    assert client.get("/api/admin/audit-logs", headers=headers).status_code == 403
