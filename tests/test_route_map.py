import pytest

from app.adminhub.modules.access_control.errors import ConfigurationError
from app.adminhub.modules.access_control.routing import (
    FeatureRef,
    RouteEntry,
    RouteMap,
    normalize_path,
    validate_route,
)

USERS = FeatureRef(id=1, name="User Management")
PROFILE = FeatureRef(id=2, name="Profile Management")
AUDIT = FeatureRef(id=3, name="Audit Logs")


def _entry(rid, path, method, feature):
    return RouteEntry(id=rid, path=path, method=method, feature=feature)


@pytest.fixture()
def route_map():
    return RouteMap.from_entries(
        [
            _entry(1, "/api/v1/users", None, USERS),
            _entry(2, "/api/v1/users/:id", None, USERS),
            _entry(3, "/api/v1/users/profile", "GET", PROFILE),
            _entry(4, "/api/v1/users/:id", "DELETE", AUDIT),
            _entry(5, "/api/v1/users/:id/access-logs", "get", AUDIT),
        ]
    )


def test_exact_literal_path(route_map):
    assert route_map.resolve("/api/v1/users", "GET").feature == USERS
    assert route_map.resolve("/api/v1/users", "POST").feature == USERS


def test_parameter_segment(route_map):
    assert route_map.resolve("/api/v1/users/42", "GET").id == 2


def test_literal_beats_parameter(route_map):
    assert route_map.resolve("/api/v1/users/profile", "GET").feature == PROFILE
    # no GET-less literal row, so PUT falls back to the parameterised wildcard row
    assert route_map.resolve("/api/v1/users/profile", "PUT").id == 2


def test_exact_method_beats_wildcard_method(route_map):
    assert route_map.resolve("/api/v1/users/3", "DELETE").id == 4
    assert route_map.resolve("/api/v1/users/3", "PUT").id == 2


def test_normalisation(route_map):
    assert route_map.resolve("/api/v1/users/", "get").id == 1
    assert route_map.resolve("/api/v1/users?page=2", "GET").id == 1
    assert route_map.resolve("/api/v1/users/7/access-logs", "GET").id == 5
    assert normalize_path("/a/b/?x=1") == "/a/b"
    assert normalize_path("/") == "/"


def test_head_matches_get_rows(route_map):
    assert route_map.resolve("/api/v1/users/7/access-logs", "HEAD").id == 5
    assert route_map.resolve("/api/v1/users/profile", "HEAD").feature == PROFILE
    assert route_map.resolve("/api/v1/users/7", "HEAD").id == 2


def test_head_prefers_explicit_head_row():
    route_map = RouteMap.from_entries(
        [
            _entry(1, "/api/v1/reports", "GET", USERS),
            _entry(2, "/api/v1/reports", "HEAD", AUDIT),
            _entry(3, "/api/v1/reports", None, PROFILE),
        ]
    )
    assert route_map.resolve("/api/v1/reports", "HEAD").id == 2
    assert route_map.resolve("/api/v1/reports", "GET").id == 1
    assert route_map.resolve("/api/v1/reports", "POST").id == 3


def test_no_match(route_map):
    assert route_map.resolve("/api/v1/payroll", "GET") is None
    assert route_map.resolve("/api/v1/users/7/access-logs", "POST") is None
    assert route_map.resolve("/api/v1/users//", "GET").id == 1


def test_strict_load_rejects_malformed_rows():
    entries = [
        _entry(1, "", "GET", USERS),
        _entry(2, "api/v1/users", None, USERS),
        _entry(3, "/api/v1/users", "FETCH", USERS),
        _entry(4, "/api/v1/roles", "GET", USERS),
    ]
    with pytest.raises(ConfigurationError) as exc:
        RouteMap.from_entries(entries)
    assert len(exc.value.problems) == 3
    assert exc.value.problems[0].startswith("route_features#1:")


def test_lenient_load_skips_malformed_rows():
    entries = [_entry(1, "", "GET", USERS), _entry(2, "/api/v1/roles", "GET", USERS)]
    route_map = RouteMap.from_entries(entries, strict=False)
    assert len(route_map) == 1
    assert route_map.resolve("/api/v1/roles", "GET").id == 2


def test_validate_route():
    assert validate_route("/api/v1/users/:id", "patch") == []
    assert validate_route("/api/v1/users/:id", None) == []
    assert validate_route(None, None) == ["Path is required."]
    assert validate_route("/api/v1/users/:", "GET")
