"""Decision engine against an in-memory store; no database involved."""
import pytest

from app.adminhub.audit import AuditTrail
from app.adminhub.modules.access_control.engine import AccessDecisionEngine
from app.adminhub.modules.access_control.errors import StoreError, StoreTimeoutError
from app.adminhub.modules.access_control.policy import PolicyRule
from app.adminhub.modules.access_control.routing import FeatureRef, RouteEntry, RouteMap
from app.adminhub.modules.access_control.store import RoleRecord, UserRecord
from app.adminhub.rbac import Capability

USERS = FeatureRef(id=1, name="User Management")
PERFORMANCE = FeatureRef(id=2, name="Employee Performance")


class FakeStore:
    def __init__(self):
        self.users: dict[int, UserRecord] = {}
        self.user_roles: dict[int, list[RoleRecord]] = {}
        self.role_features: dict[tuple[int, int], Capability] = {}
        self.policies: dict[int, list[PolicyRule]] = {}
        self.routes = RouteMap.from_entries(
            [
                RouteEntry(id=1, path="/api/v1/users", method=None, feature=USERS),
                RouteEntry(id=2, path="/api/v1/users/:id", method=None, feature=USERS),
                RouteEntry(id=3, path="/api/v1/employees", method=None, feature=PERFORMANCE),
            ]
        )
        self.fail_on: str | None = None
        self.calls: list[str] = []

    def _hit(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_on == name:
            raise StoreError(f"{name}: connection refused")

    def get_user(self, user_id):
        self._hit("get_user")
        return self.users.get(user_id)

    def get_user_roles(self, user_id):
        self._hit("get_user_roles")
        return list(self.user_roles.get(user_id, []))

    def get_role_feature(self, role_id, feature_id):
        self._hit("get_role_feature")
        return self.role_features.get((role_id, feature_id))

    def get_policies_for_feature(self, feature_id):
        self._hit("get_policies_for_feature")
        return list(self.policies.get(feature_id, []))

    def resolve_feature(self, path, method):
        self._hit("resolve_feature")
        return self.routes.resolve(path, method)


class FakeAudit:
    def __init__(self):
        self.records = []

    def record_access(self, decision):
        self.records.append(decision)


class FakeClock:
    def __init__(self, step: float = 0.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def _user(uid, **attrs):
    attributes = {"id": uid, "active": True, **attrs}
    return UserRecord(id=uid, active=attrs.get("active", True), attributes=attributes)


@pytest.fixture()
def store():
    s = FakeStore()
    s.users[1] = _user(1, department="IT", level=5)
    s.user_roles[1] = [RoleRecord(id=1, name="Super Admin", grants_all=True)]
    s.users[7] = _user(7, level=1)
    s.user_roles[7] = [RoleRecord(id=4, name="Employee")]
    s.role_features[(4, USERS.id)] = Capability(can_read=True)
    return s


@pytest.fixture()
def audit():
    return FakeAudit()


@pytest.fixture()
def engine(store, audit):
    return AccessDecisionEngine(store, audit, timeout_seconds=None)


def test_zero_roles_denied(store, audit, engine):
    store.users[9] = _user(9)
    d = engine.decide(9, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (False, "no roles assigned")
    assert audit.records == [d]


def test_grants_all_allows_regardless_of_capabilities_and_policies(store, audit, engine):
    store.policies[USERS.id] = [PolicyRule(id=1, feature_id=USERS.id, attribute="department", operator="eq", value="HR")]
    d = engine.decide(1, "/api/v1/users/3", "DELETE")
    assert (d.allow, d.reason) == (True, "grants-all role")
    assert d.role_id == 1
    assert d.matched_feature == USERS
    assert d.violations == []
    assert "get_role_feature" not in store.calls
    assert "get_policies_for_feature" not in store.calls
    assert len(audit.records) == 1


def test_grants_all_allows_any_path(engine):
    d = engine.decide(1, "/api/v1/anything/at/all", "PATCH")
    assert (d.allow, d.reason) == (True, "grants-all role")
    assert d.feature is None


def test_unmapped_route_denied_by_default(engine, audit):
    d = engine.decide(7, "/api/v1/payroll", "GET")
    assert (d.allow, d.reason) == (False, "no route mapping")
    assert d.feature is None
    assert len(audit.records) == 1


@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "PATCH", "DELETE"])
def test_all_flags_false_denies_every_method(store, engine, method):
    store.role_features[(4, USERS.id)] = Capability()
    d = engine.decide(7, "/api/v1/users", method)
    assert (d.allow, d.reason) == (False, "insufficient role capability")


def test_missing_role_feature_row_denies(engine):
    d = engine.decide(7, "/api/v1/employees", "GET")
    assert (d.allow, d.reason) == (False, "insufficient role capability")


def test_capabilities_or_aggregate_across_roles(store, engine):
    store.users[5] = _user(5)
    store.user_roles[5] = [RoleRecord(id=2, name="R1"), RoleRecord(id=3, name="R2")]
    store.role_features[(2, USERS.id)] = Capability(can_read=False, can_update=True)
    store.role_features[(3, USERS.id)] = Capability(can_read=True)
    d = engine.decide(5, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (True, "access granted")
    assert d.role_id == 3
    assert engine.decide(5, "/api/v1/users/8", "PUT").allow is True
    assert engine.decide(5, "/api/v1/users/8", "DELETE").allow is False


def test_end_to_end_delete_without_capability(audit, engine):
    d = engine.decide(7, "/api/v1/users/3", "DELETE")
    assert d.allow is False
    assert d.reason == "insufficient role capability"
    assert d.feature == USERS
    assert len(audit.records) == 1
    assert audit.records[0].allow is False


def test_policy_violation_recorded(store, engine):
    store.users[6] = _user(6, level=2)
    store.user_roles[6] = [RoleRecord(id=5, name="Manager")]
    store.role_features[(5, PERFORMANCE.id)] = Capability(can_read=True)
    store.policies[PERFORMANCE.id] = [
        PolicyRule(id=11, feature_id=PERFORMANCE.id, attribute="level", operator="gte", value="3")
    ]
    d = engine.decide(6, "/api/v1/employees", "GET")
    assert (d.allow, d.reason) == (False, "policy violation")
    assert len(d.violations) == 1
    v = d.violations[0]
    assert (v.policy_id, v.expected_value, v.actual_value) == (11, "3", "2")


def test_no_policies_means_capability_is_enough(store, engine):
    d = engine.decide(7, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (True, "access granted")
    assert d.violations == []


def test_repeated_decisions_identical_but_audited_twice(audit, engine):
    first = engine.decide(7, "/api/v1/users", "GET", request_id="r1")
    second = engine.decide(7, "/api/v1/users", "GET", request_id="r2")
    assert (first.allow, first.reason, first.feature, first.role_id) == (
        second.allow,
        second.reason,
        second.feature,
        second.role_id,
    )
    assert len(audit.records) == 2
    assert [r.request_id for r in audit.records] == ["r1", "r2"]


def test_unknown_user_denied_not_raised(audit, engine):
    d = engine.decide(404, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (False, "unknown user")
    assert d.user_id is None
    assert len(audit.records) == 1


def test_garbage_user_id_denied(engine):
    assert engine.decide("not-a-number", "/api/v1/users", "GET").reason == "unknown user"
    assert engine.decide(None, "/api/v1/users", "GET").reason == "unknown user"


def test_inactive_user_denied_even_with_grants_all_role(store, audit, engine):
    store.users[8] = _user(8, active=False)
    store.user_roles[8] = [RoleRecord(id=1, name="Super Admin", grants_all=True)]
    d = engine.decide(8, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (False, "inactive user")
    assert d.role_id is None
    assert "get_user_roles" not in store.calls
    assert audit.records == [d]


def test_head_request_resolves_to_get_mapping(store):
    store.routes = RouteMap.from_entries(
        [RouteEntry(id=9, path="/api/v1/users", method="GET", feature=USERS)]
    )
    engine = AccessDecisionEngine(store, FakeAudit(), timeout_seconds=None)
    assert engine.decide(7, "/api/v1/users", "GET").reason == "access granted"
    d = engine.decide(7, "/api/v1/users", "HEAD")
    assert (d.allow, d.reason) == (True, "access granted")
    assert d.feature == USERS


class FailingSession:
    def add(self, _row):
        pass

    def commit(self):
        raise RuntimeError("disk I/O error")

    def rollback(self):
        pass

    def close(self):
        pass


def _broken_factory():
    raise RuntimeError("db down")


@pytest.mark.parametrize("factory", [_broken_factory, FailingSession], ids=["factory", "commit"])
def test_audit_write_failure_never_fails_the_decision(store, factory):
    trail = AuditTrail(factory)
    engine = AccessDecisionEngine(store, trail, timeout_seconds=None)

    d = engine.decide(7, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (True, "access granted")
    d = engine.decide(7, "/api/v1/users/3", "DELETE")
    assert (d.allow, d.reason) == (False, "insufficient role capability")
    assert trail.write_failures == 2


def test_unsupported_method_denied(engine):
    d = engine.decide(7, "/api/v1/users", "OPTIONS")
    assert (d.allow, d.reason) == (False, "unsupported method")


def test_store_error_propagates_and_is_audited(store, audit, engine):
    store.fail_on = "get_user_roles"
    with pytest.raises(StoreError):
        engine.decide(7, "/api/v1/users", "GET")
    assert len(audit.records) == 1
    assert audit.records[0].allow is False
    assert audit.records[0].reason == "store unavailable"


def test_store_timeout_denies(store, audit):
    engine = AccessDecisionEngine(store, audit, timeout_seconds=1.0, clock=FakeClock(step=0.6))
    d = engine.decide(7, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (False, "store timeout")
    assert len(audit.records) == 1


def test_timeout_error_from_store_denies(store, audit, engine):
    def slow(*_args):
        raise StoreTimeoutError("statement timeout")

    store.get_policies_for_feature = slow
    d = engine.decide(7, "/api/v1/users", "GET")
    assert (d.allow, d.reason) == (False, "store timeout")


def test_decision_as_dict(engine):
    d = engine.decide(7, "/api/v1/users/3", "DELETE")
    assert d.as_dict() == {
        "allow": False,
        "reason": "insufficient role capability",
        "feature": "User Management",
        "violations": [],
    }
