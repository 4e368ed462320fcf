import os
import sys
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

# make sure the repository root is on sys.path for test collection
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config import Settings
from main import create_app
from models import User


@pytest.fixture
def settings(tmp_path):
    # Each test gets its own sqlite file; no geolocation calls, cookies over http
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        CREATE_TABLES=True,
        SECRET_KEY="test-secret-key",
        ENVIRONMENT="development",
        BASE_URL="http://testserver",
        LOCATION_LOOKUP_ENABLED=False,
        RATE_LIMIT_ENABLED=False,
        SCAN_RECORD_RETRIES=1,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def signup(client, email, password="password123", full_name="Test User"):
    r = client.post("/api/auth/signup", json={"email": email, "password": password, "fullName": full_name})
    assert r.status_code == 201, r.text
    client.cookies.clear()
    return r.json()


def login_headers(client, email, password="password123"):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    # Authenticate through the bearer header so several users can share a client
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def set_role(client, email, role, permissions=None):
    """Promote a user directly in the store. Log in again afterwards: the role travels in the token."""

    async def _update():
        async with client.app.state.db.session() as session:
            await session.execute(
                update(User).where(User.email == email).values(role=role, permissions=permissions or [])
            )
            await session.commit()

    client.portal.call(_update)


@pytest.fixture
def user_headers(client):
    signup(client, "owner@example.com", full_name="Alice Owner")
    return login_headers(client, "owner@example.com")


@pytest.fixture
def admin_headers(client):
    signup(client, "admin@example.com", full_name="Site Admin")
    set_role(client, "admin@example.com", "admin")
    return login_headers(client, "admin@example.com")
