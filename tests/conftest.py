"""
Fixture condivise: settings di test, database SQLite su file temporaneo,
audit sink, utenti e client HTTP.
"""
from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest
from fastapi.testclient import TestClient

from clinic_backend.api_main import create_app
from clinic_backend.audit import AuditSink
from clinic_backend.auth_models import Role, User
from clinic_backend.auth_security import TokenClaims, create_access_token, hash_password
from clinic_backend.config import Settings
from clinic_backend.db import Database
from clinic_backend.models import Client

PASSWORD = "password123"


@pytest.fixture
def settings(tmp_path):
    """
    Settings isolate per test.
    File SQLite (non :memory:) cosi' i thread vedono lo stesso DB;
    bcrypt al costo minimo per velocita'.
    """
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.sqlite'}",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
    )


@pytest.fixture
def db(settings):
    database = Database(settings.database_url)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def audit_sink(db):
    sink = AuditSink(db)
    yield sink
    sink.close()


@pytest.fixture
def make_user(db):
    """Factory: crea un utente direttamente nello store."""

    def _make(username: str, role: Role = Role.THERAPIST, password: str = PASSWORD) -> User:
        with db.session() as s:
            u = User(username=username, password_hash=hash_password(password, 4), role=role)
            s.add(u)
            s.flush()
            return u

    return _make


@pytest.fixture
def make_client(db):
    """Factory: crea un cliente, opzionalmente assegnato a un terapeuta."""

    def _make(name: str, therapist: User | None = None) -> Client:
        with db.session() as s:
            c = Client(name=name, assigned_therapist_id=therapist.id if therapist else None)
            s.add(c)
            s.flush()
            return c

    return _make


@pytest.fixture
def claims_for(settings):
    def _claims(user: User) -> TokenClaims:
        _token, claims = create_access_token(user, settings)
        return claims

    return _claims


@pytest.fixture
def admin(make_user):
    return make_user("admin", Role.ADMIN)


@pytest.fixture
def therapist(make_user):
    return make_user("t1", Role.THERAPIST)


@pytest.fixture
def other_therapist(make_user):
    return make_user("t2", Role.THERAPIST)


# =========================
# HTTP
# =========================
@pytest.fixture
def api(settings):
    app = create_app(settings)
    with TestClient(app) as client:
        yield client


def login_headers(client: TestClient, username: str, password: str = PASSWORD) -> dict[str, str]:
    r = client.post("/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def admin_headers(api):
    """Bootstrap: il primo utente registrato senza token e' l'Admin."""
    r = api.post("/auth/register", json={"username": "admin", "password": PASSWORD, "role": "Admin"})
    assert r.status_code == 201, r.text
    return login_headers(api, "admin")


def with_settings(settings: Settings, **changes) -> Settings:
    """Copia validata delle settings con alcuni campi cambiati."""
    return Settings(**{**settings.model_dump(), **changes})


@pytest.fixture
def rome_settings(settings):
    try:
        ZoneInfo("Europe/Rome")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not available")
    return with_settings(settings, clinic_timezone="Europe/Rome")
