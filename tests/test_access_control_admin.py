import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.adminhub import create_app
from app.adminhub.auth import _login_attempts
from app.adminhub.db import session_scope
from app.adminhub.models import Base, ChangeHistory, Role, User
from app.adminhub.modules.access_control import service
from app.adminhub.modules.access_control.errors import ConfigurationError
from app.adminhub.modules.access_control.models import Feature, Policy, RoleFeature, RouteFeature


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    _login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        role = Role(name="Super Admin", grants_all=True)
        u = User(name="Admin", email="admin@example.com", password_hash=generate_password_hash("password123"), active=True)
        u.roles.append(role)
        s.add_all([role, u])
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": "admin@example.com", "password": "password123"})
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
    return c


def test_category_feature_crud(app, client):
    r = client.post("/api/v1/feature-categories", json={"name": "User Management", "color": "#10B981"})
    assert r.status_code == 201, r.json
    category = r.json
    assert category["slug"] == "user-management"
    assert category["icon"] == "IconSettings"

    r = client.post("/api/v1/feature-categories", json={"name": "Reports", "color": "green"})
    assert r.status_code == 400

    r = client.post("/api/v1/features", json={"name": "User Management", "category_id": category["id"]})
    assert r.status_code == 201
    feature_id = r.json["id"]

    r = client.post("/api/v1/features", json={"name": "User Management"})
    assert r.status_code == 400
    assert "already exists" in r.json["errors"][0]

    r = client.get(f"/api/v1/features?category_id={category['id']}")
    assert [f["id"] for f in r.json["items"]] == [feature_id]

    r = client.put(f"/api/v1/features/{feature_id}", json={"description": "Accounts"})
    assert r.json["description"] == "Accounts"

    r = client.delete(f"/api/v1/features/{feature_id}")
    assert r.status_code == 200
    assert client.get(f"/api/v1/features/{feature_id}").status_code == 404

    with session_scope(app) as s:
        actions = s.execute(
            select(ChangeHistory.action).where(ChangeHistory.table_name == "features").order_by(ChangeHistory.id)
        ).scalars().all()
    assert actions == ["create", "update", "delete"]


def test_role_feature_uniqueness(client):
    role_id = client.post("/api/v1/roles", json={"name": "Manager"}).json["id"]
    feature_id = client.post("/api/v1/features", json={"name": "Payroll Management"}).json["id"]

    payload = {"role_id": role_id, "feature_id": feature_id, "can_read": True}
    r = client.post("/api/v1/role-features", json=payload)
    assert r.status_code == 201
    assert r.json["can_read"] is True
    assert r.json["can_delete"] is False

    r = client.post("/api/v1/role-features", json=payload)
    assert r.status_code == 400
    assert "already has a capability row" in r.json["errors"][0]

    r = client.get(f"/api/v1/role-features?role_id={role_id}")
    assert r.json["total"] == 1


def test_policy_operator_validation(client):
    feature_id = client.post("/api/v1/features", json={"name": "Employee Performance"}).json["id"]

    r = client.post("/api/v1/policies", json={"feature_id": feature_id, "attribute": "level", "operator": "~=", "value": "3"})
    assert r.status_code == 400
    assert any("Unknown operator" in e for e in r.json["errors"])

    r = client.post("/api/v1/policies", json={"feature_id": feature_id, "attribute": "level", "operator": ">=", "value": "3"})
    assert r.status_code == 201

    r = client.post("/api/v1/policies", json={"feature_id": 999, "attribute": "", "operator": "in"})
    assert r.status_code == 400
    assert len(r.json["errors"]) == 3


def test_route_feature_validation_and_normalisation(client):
    feature_id = client.post("/api/v1/features", json={"name": "User Management"}).json["id"]

    r = client.post("/api/v1/route-features", json={"path": "/api/v1/users/", "method": "get", "feature_id": feature_id})
    assert r.status_code == 201
    assert (r.json["path"], r.json["method"]) == ("/api/v1/users", "GET")

    r = client.post("/api/v1/route-features", json={"path": "/api/v1/users", "method": "GET", "feature_id": feature_id})
    assert r.status_code == 400

    r = client.post("/api/v1/route-features", json={"path": "/api/v1/users", "feature_id": feature_id})
    assert r.status_code == 201
    assert r.json["method"] is None

    r = client.post("/api/v1/route-features", json={"path": "/api/v1/users", "feature_id": feature_id})
    assert r.status_code == 400

    r = client.post("/api/v1/route-features", json={"path": "users", "method": "FETCH", "feature_id": feature_id})
    assert r.status_code == 400
    assert len(r.json["errors"]) == 2


def test_toggling_grants_all_bumps_role_members(app, client):
    with session_scope(app) as s:
        role_id = s.execute(select(Role.id).where(Role.name == "Super Admin")).scalar_one()

    r = client.patch(f"/api/v1/roles/{role_id}", json={"description": "Everything"})
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.execute(select(User).where(User.email == "admin@example.com")).scalar_one().roles_updated_at is None

    r = client.post("/api/v1/roles", json={"name": "Auditor", "grants_all": "yes"})
    assert r.status_code == 201
    assert r.json["grants_all"] is True

    r = client.patch(f"/api/v1/roles/{role_id}", json={"grants_all": False})
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.execute(select(User).where(User.email == "admin@example.com")).scalar_one().roles_updated_at is not None


def test_startup_rejects_malformed_access_configuration(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'broken.db'}"
    engine = create_engine(db_url, future=True)
    Base.metadata.create_all(bind=engine)
    with Session(engine) as s:
        feature = Feature(name="User Management")
        s.add(feature)
        s.flush()
        s.add(RouteFeature(path="api/v1/users", method="GET", feature_id=feature.id))
        s.add(Policy(feature_id=feature.id, attribute="level", operator="like", value="3"))
        s.commit()
    engine.dispose()

    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")
    with pytest.raises(ConfigurationError) as exc:
        create_app()
    assert len(exc.value.problems) == 2


def test_conflict_at_commit_is_409_and_drops_staged_history(app, client, monkeypatch):
    real_create = service.create_record

    def create_then_clash(s, obj, values, user, reason=None):
        created = real_create(s, obj, values, user, reason)
        s.add(Role(name="Super Admin"))
        return created

    monkeypatch.setattr(service, "create_record", create_then_clash)
    r = client.post("/api/v1/roles", json={"name": "Auditor"})
    assert r.status_code == 409
    assert r.json["error"].startswith("Conflicts with existing data")

    with session_scope(app) as s:
        assert s.execute(select(Role).where(Role.name == "Auditor")).first() is None
        assert s.execute(select(ChangeHistory)).first() is None
    assert app.extensions["audit_trail"].write_failures == 0


def test_deleting_feature_records_cascaded_rows(app, client):
    role_id = client.post("/api/v1/roles", json={"name": "Manager"}).json["id"]
    feature_id = client.post("/api/v1/features", json={"name": "Payroll Management"}).json["id"]
    rf_id = client.post(
        "/api/v1/role-features", json={"role_id": role_id, "feature_id": feature_id, "can_read": True}
    ).json["id"]
    route_id = client.post(
        "/api/v1/route-features", json={"path": "/api/v1/payroll", "feature_id": feature_id}
    ).json["id"]
    policy_id = client.post(
        "/api/v1/policies", json={"feature_id": feature_id, "attribute": "department", "operator": "in", "value": "HR"}
    ).json["id"]

    r = client.delete(f"/api/v1/features/{feature_id}", json={"reason": "retired"})
    assert r.status_code == 200

    with session_scope(app) as s:
        deletes = s.execute(
            select(ChangeHistory.table_name, ChangeHistory.record_id, ChangeHistory.reason)
            .where(ChangeHistory.action == "delete")
            .order_by(ChangeHistory.id)
        ).all()
        assert s.get(RoleFeature, rf_id) is None
        assert s.get(RouteFeature, route_id) is None
    assert [tuple(d) for d in deletes] == [
        ("role_features", rf_id, "retired"),
        ("route_features", route_id, "retired"),
        ("policies", policy_id, "retired"),
        ("features", feature_id, "retired"),
    ]


def test_deleting_role_records_assignments_and_capabilities(app, client):
    role_id = client.post("/api/v1/roles", json={"name": "Manager"}).json["id"]
    feature_id = client.post("/api/v1/features", json={"name": "Payroll Management"}).json["id"]
    client.post("/api/v1/role-features", json={"role_id": role_id, "feature_id": feature_id, "can_read": True})
    client.post("/api/v1/users/1/roles", json={"role_id": role_id})

    assert client.delete(f"/api/v1/roles/{role_id}").status_code == 200

    with session_scope(app) as s:
        tables = s.execute(
            select(ChangeHistory.table_name).where(ChangeHistory.action == "delete").order_by(ChangeHistory.id)
        ).scalars().all()
        admin = s.execute(select(User).where(User.email == "admin@example.com")).scalar_one()
        assert [r.name for r in admin.roles] == ["Super Admin"]
    assert tables == ["role_features", "user_roles", "roles"]
