import pytest
from werkzeug.security import generate_password_hash

from app.adminhub import create_app
from app.adminhub.auth import _login_attempts
from app.adminhub.db import session_scope
from app.adminhub.models import Base, Role, User
from app.adminhub.modules.access_control.models import Feature, RoleFeature


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    _login_attempts.clear()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        f = Feature(name="Profile Management")
        r = Role(name="Employee")
        s.add_all([f, r])
        s.flush()
        s.add(RoleFeature(role_id=r.id, feature_id=f.id, can_read=True, can_update=True, can_create=False, can_delete=False))
        u = User(name="Staff", email="staff@example.com", password_hash=generate_password_hash("password123"), active=True)
        u.roles.append(r)
        s.add(u)
        s.add(User(name="Gone", email="gone@example.com", password_hash=generate_password_hash("password123"), active=False))

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["db_connected"] is True
    assert r.json["audit_write_failures"] == 0


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_and_me(client):
    r = client.get("/auth/me")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "STAFF@example.com", "password": "password123"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "staff@example.com"
    assert r.json["csrf_token"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["roles"][0]["name"] == "Employee"
    assert r.json["capabilities"] == {
        "Profile Management": {"can_create": False, "can_read": True, "can_update": True, "can_delete": False}
    }


def test_login_rejects_bad_password_and_inactive_user(client):
    r = client.post("/auth/login", json={"email": "staff@example.com", "password": "nope"})
    assert r.status_code == 401
    r = client.post("/auth/login", json={"email": "gone@example.com", "password": "password123"})
    assert r.status_code == 401


def test_login_rate_limited(client):
    for _ in range(5):
        client.post("/auth/login", json={"email": "staff@example.com", "password": "wrong"})
    r = client.post("/auth/login", json={"email": "staff@example.com", "password": "password123"})
    assert r.status_code == 429


def test_logout_requires_csrf_and_clears_session(client):
    token = client.post("/auth/login", json={"email": "staff@example.com", "password": "password123"}).json["csrf_token"]
    assert client.post("/auth/logout").status_code == 400
    assert client.post("/auth/logout", headers={"X-CSRF-Token": token}).status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_change_password(client):
    token = client.post("/auth/login", json={"email": "staff@example.com", "password": "password123"}).json["csrf_token"]
    r = client.post(
        "/auth/password",
        json={"current_password": "wrong", "new_password": "new-password-1"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 400
    r = client.post(
        "/auth/password",
        json={"current_password": "password123", "new_password": "short"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 400
    r = client.post(
        "/auth/password",
        json={"current_password": "password123", "new_password": "new-password-1"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 200

    client.post("/auth/logout", headers={"X-CSRF-Token": token})
    r = client.post("/auth/login", json={"email": "staff@example.com", "password": "new-password-1"})
    assert r.status_code == 200
