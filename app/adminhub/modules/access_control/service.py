"""
Admin-time management of roles, features, capability rows, policies and the route map.

Every mutation stages a change-history entry; validation of route rows and
policy operators happens here (and at startup) so that the decision engine
never has to reject configuration at request time.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, inspect as sa_inspect, select
from sqlalchemy.exc import OperationalError, ProgrammingError

from app.adminhub.audit import record_change, snapshot
from app.adminhub.models import Role, User, UserRole
from app.adminhub.modules.access_control.errors import ConfigurationError
from app.adminhub.modules.access_control.models import Feature, FeatureCategory, Policy, RoleFeature, RouteFeature
from app.adminhub.modules.access_control.policy import validate_operator
from app.adminhub.modules.access_control.routing import normalize_method, normalize_path, validate_route
from app.adminhub.utils import clean_str, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

Fields = dict[str, Callable[[Any], Any]]

ROLE_FIELDS: Fields = {"name": clean_str, "description": clean_str, "grants_all": parse_bool}
CATEGORY_FIELDS: Fields = {
    "name": clean_str,
    "slug": clean_str,
    "description": clean_str,
    "color": clean_str,
    "icon": clean_str,
    "is_active": parse_bool,
    "sort_order": parse_int,
}
FEATURE_FIELDS: Fields = {"name": clean_str, "description": clean_str, "category_id": parse_int}
ROLE_FEATURE_FIELDS: Fields = {
    "role_id": parse_int,
    "feature_id": parse_int,
    "can_create": parse_bool,
    "can_read": parse_bool,
    "can_update": parse_bool,
    "can_delete": parse_bool,
}
POLICY_FIELDS: Fields = {"feature_id": parse_int, "attribute": clean_str, "operator": clean_str, "value": clean_str}
ROUTE_FIELDS: Fields = {"path": clean_str, "method": clean_str, "feature_id": parse_int}


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _merged(obj: Any, values: dict[str, Any], key: str) -> Any:
    if key in values:
        return values[key]
    return getattr(obj, key, None) if obj is not None else None


def _taken(s: "Session", column, value: Any, obj: Any) -> bool:
    stmt = select(func.count()).select_from(column.class_).where(column == value)
    if obj is not None and obj.id is not None:
        stmt = stmt.where(column.class_.id != obj.id)
    return s.execute(stmt).scalar_one() > 0


def _stage(s: "Session", user: User | None, obj: Any, action: str, old: dict | None, reason: str | None) -> None:
    s.flush()
    record_change(
        s,
        actor=user,
        table_name=obj.__tablename__,
        record_id=obj.id,
        action=action,
        old_values=old,
        new_values=snapshot(obj) if action != "delete" else None,
        reason=reason,
    )


def create_record(s: "Session", obj: Any, values: dict[str, Any], user: User | None, reason: str | None = None) -> Any:
    for key, v in values.items():
        setattr(obj, key, v)
    s.add(obj)
    _stage(s, user, obj, "create", None, reason)
    return obj


def update_record(s: "Session", obj: Any, values: dict[str, Any], user: User | None, reason: str | None) -> dict[str, Any]:
    old = snapshot(obj)
    for key, v in values.items():
        setattr(obj, key, v)
    _stage(s, user, obj, "update", old, reason)
    return {k: {"old": old.get(k), "new": v} for k, v in values.items() if old.get(k) != v}


def delete_record(s: "Session", obj: Any, user: User | None, reason: str | None = None) -> None:
    old = snapshot(obj)
    record_id = obj.id
    s.delete(obj)
    s.flush()
    record_change(
        s,
        actor=user,
        table_name=obj.__tablename__,
        record_id=record_id,
        action="delete",
        old_values=old,
        new_values=None,
        reason=reason,
    )


def record_cascade(s: "Session", user: User | None, rows: list[Any], reason: str | None = None) -> None:
    """Stage delete history for rows the database removes by ON DELETE CASCADE."""
    for row in rows:
        record_change(
            s,
            actor=user,
            table_name=row.__tablename__,
            record_id=row.id,
            action="delete",
            old_values=snapshot(row),
            reason=reason,
        )


def _stamp_role_users(s: "Session", role: Role) -> None:
    now = datetime.utcnow()
    for u in role.users or []:
        u.roles_updated_at = now


# ---------- Roles ----------
def validate_role(s: "Session", values: dict[str, Any], role: Role | None = None) -> list[str]:
    errors = []
    name = _merged(role, values, "name")
    if not name:
        errors.append("Name is required.")
    elif len(name) > 100:
        errors.append("Name must be at most 100 characters.")
    elif (role is None or "name" in values) and _taken(s, Role.name, name, role):
        errors.append(f"Role {name!r} already exists.")
    return errors


def create_role(s: "Session", values: dict[str, Any], user: User | None) -> Role:
    values.setdefault("grants_all", False)
    return create_record(s, Role(), values, user)


def update_role(s: "Session", role: Role, values: dict[str, Any], user: User | None, reason: str | None = None) -> Role:
    grants_all_before = bool(role.grants_all)
    update_record(s, role, values, user, reason)
    if bool(role.grants_all) != grants_all_before:
        _stamp_role_users(s, role)
    return role


def delete_role(s: "Session", role: Role, user: User | None, reason: str | None = None) -> None:
    _stamp_role_users(s, role)
    dependents = [
        *s.execute(select(RoleFeature).where(RoleFeature.role_id == role.id).order_by(RoleFeature.id)).scalars(),
        *s.execute(select(UserRole).where(UserRole.role_id == role.id).order_by(UserRole.id)).scalars(),
    ]
    record_cascade(s, user, dependents, reason)
    delete_record(s, role, user, reason)


# ---------- Feature categories ----------
def validate_category(s: "Session", values: dict[str, Any], category: FeatureCategory | None = None) -> list[str]:
    errors = []
    name = _merged(category, values, "name")
    if category is None and name and not values.get("slug"):
        values["slug"] = slugify(name)
    slug = _merged(category, values, "slug")
    if not name:
        errors.append("Name is required.")
    elif (category is None or "name" in values) and _taken(s, FeatureCategory.name, name, category):
        errors.append(f"Category {name!r} already exists.")
    if not slug:
        errors.append("Slug is required.")
    elif not re.fullmatch(r"[a-z0-9]+(?:-[a-z0-9]+)*", slug):
        errors.append("Slug may only contain lowercase letters, digits and dashes.")
    elif (category is None or "slug" in values) and _taken(s, FeatureCategory.slug, slug, category):
        errors.append(f"Slug {slug!r} already exists.")
    color = values.get("color")
    if color is not None and not _COLOR_RE.match(color):
        errors.append("Color must look like #RRGGBB.")
    return errors


def create_category(s: "Session", values: dict[str, Any], user: User | None) -> FeatureCategory:
    now = datetime.utcnow()
    values = {k: v for k, v in values.items() if v is not None}
    return create_record(s, FeatureCategory(created_at=now, updated_at=now), values, user)


def update_category(
    s: "Session", category: FeatureCategory, values: dict[str, Any], user: User | None, reason: str | None = None
) -> FeatureCategory:
    values = {k: v for k, v in values.items() if v is not None or k == "description"}
    values["updated_at"] = datetime.utcnow()
    update_record(s, category, values, user, reason)
    return category


# ---------- Features ----------
def validate_feature(s: "Session", values: dict[str, Any], feature: Feature | None = None) -> list[str]:
    errors = []
    name = _merged(feature, values, "name")
    if not name:
        errors.append("Name is required.")
    elif (feature is None or "name" in values) and _taken(s, Feature.name, name, feature):
        errors.append(f"Feature {name!r} already exists.")
    category_id = values.get("category_id")
    if category_id is not None and s.get(FeatureCategory, category_id) is None:
        errors.append(f"Feature category {category_id} not found.")
    return errors


def create_feature(s: "Session", values: dict[str, Any], user: User | None) -> Feature:
    return create_record(s, Feature(), values, user)


def delete_feature(s: "Session", feature: Feature, user: User | None, reason: str | None = None) -> None:
    dependents = [
        *s.execute(select(RoleFeature).where(RoleFeature.feature_id == feature.id).order_by(RoleFeature.id)).scalars(),
        *s.execute(select(RouteFeature).where(RouteFeature.feature_id == feature.id).order_by(RouteFeature.id)).scalars(),
        *s.execute(select(Policy).where(Policy.feature_id == feature.id).order_by(Policy.id)).scalars(),
    ]
    record_cascade(s, user, dependents, reason)
    delete_record(s, feature, user, reason)


def update_feature(s: "Session", feature: Feature, values: dict[str, Any], user: User | None, reason: str | None = None) -> Feature:
    update_record(s, feature, values, user, reason)
    return feature


# ---------- Role features (capability matrix) ----------
def validate_role_feature(s: "Session", values: dict[str, Any], rf: RoleFeature | None = None) -> list[str]:
    errors = []
    role_id = _merged(rf, values, "role_id")
    feature_id = _merged(rf, values, "feature_id")
    if role_id is None:
        errors.append("role_id is required.")
    elif s.get(Role, role_id) is None:
        errors.append(f"Role {role_id} not found.")
    if feature_id is None:
        errors.append("feature_id is required.")
    elif s.get(Feature, feature_id) is None:
        errors.append(f"Feature {feature_id} not found.")
    if not errors:
        stmt = select(RoleFeature.id).where(RoleFeature.role_id == role_id, RoleFeature.feature_id == feature_id)
        if rf is not None:
            stmt = stmt.where(RoleFeature.id != rf.id)
        if s.execute(stmt).first() is not None:
            errors.append(f"Role {role_id} already has a capability row for feature {feature_id}.")
    return errors


def create_role_feature(s: "Session", values: dict[str, Any], user: User | None) -> RoleFeature:
    for flag in ("can_create", "can_read", "can_update", "can_delete"):
        values.setdefault(flag, False)
    return create_record(s, RoleFeature(), values, user)


def update_role_feature(
    s: "Session", rf: RoleFeature, values: dict[str, Any], user: User | None, reason: str | None = None
) -> RoleFeature:
    update_record(s, rf, values, user, reason)
    return rf


# ---------- Policies ----------
def validate_policy(s: "Session", values: dict[str, Any], policy: Policy | None = None) -> list[str]:
    errors = []
    feature_id = _merged(policy, values, "feature_id")
    if feature_id is None:
        errors.append("feature_id is required.")
    elif s.get(Feature, feature_id) is None:
        errors.append(f"Feature {feature_id} not found.")
    attribute = _merged(policy, values, "attribute")
    if not attribute:
        errors.append("Attribute is required.")
    elif len(attribute) > 100:
        errors.append("Attribute must be at most 100 characters.")
    operator = _merged(policy, values, "operator")
    errors.extend(validate_operator(operator))
    if operator and len(operator) > 10:
        errors.append("Operator must be at most 10 characters.")
    if _merged(policy, values, "value") is None:
        errors.append("Value is required.")
    return errors


def create_policy(s: "Session", values: dict[str, Any], user: User | None) -> Policy:
    return create_record(s, Policy(), values, user)


def update_policy(s: "Session", policy: Policy, values: dict[str, Any], user: User | None, reason: str | None = None) -> Policy:
    update_record(s, policy, values, user, reason)
    return policy


# ---------- Route map ----------
def validate_route_feature(s: "Session", values: dict[str, Any], route: RouteFeature | None = None) -> list[str]:
    path = _merged(route, values, "path")
    method = _merged(route, values, "method")
    errors = validate_route(path, method)
    feature_id = _merged(route, values, "feature_id")
    if feature_id is None:
        errors.append("feature_id is required.")
    elif s.get(Feature, feature_id) is None:
        errors.append(f"Feature {feature_id} not found.")
    if not errors:
        values["path"] = normalize_path(path)
        values["method"] = normalize_method(method)
        stmt = select(RouteFeature.id).where(RouteFeature.path == values["path"])
        if values["method"] is None:
            stmt = stmt.where(RouteFeature.method.is_(None))
        else:
            stmt = stmt.where(RouteFeature.method == values["method"])
        if route is not None:
            stmt = stmt.where(RouteFeature.id != route.id)
        if s.execute(stmt).first() is not None:
            errors.append(f"Route {values['method'] or '*'} {values['path']} is already mapped.")
    return errors


def create_route_feature(s: "Session", values: dict[str, Any], user: User | None) -> RouteFeature:
    return create_record(s, RouteFeature(), values, user)


def update_route_feature(
    s: "Session", route: RouteFeature, values: dict[str, Any], user: User | None, reason: str | None = None
) -> RouteFeature:
    update_record(s, route, values, user, reason)
    return route


# ---------- Startup check ----------
def find_configuration_problems(s: "Session") -> list[str]:
    problems = []
    for r in s.execute(select(RouteFeature).order_by(RouteFeature.id)).scalars():
        for e in validate_route(r.path, r.method):
            problems.append(f"route_features#{r.id}: {e}")
    for p in s.execute(select(Policy).order_by(Policy.id)).scalars():
        for e in validate_operator(p.operator):
            problems.append(f"policies#{p.id}: {e}")
    return problems


def check_access_configuration(s: "Session") -> int:
    """
    Validate the stored route map and policy operators.

    Raises ConfigurationError on malformed rows so misconfiguration is caught
    before traffic flows. Returns the number of route mappings checked; a
    database without the tables yet (fresh install) only logs a warning.
    """
    try:
        insp = sa_inspect(s.get_bind())
        if not (insp.has_table("route_features") and insp.has_table("policies")):
            logger.warning("Access-control tables missing; run `alembic upgrade head`.")
            return 0
        problems = find_configuration_problems(s)
        count = s.execute(select(func.count(RouteFeature.id))).scalar_one()
    except (OperationalError, ProgrammingError) as e:
        logger.warning("Access configuration check skipped: %s", e)
        return 0
    if problems:
        for p in problems:
            logger.error("Access configuration error: %s", p)
        raise ConfigurationError(f"{len(problems)} malformed access-control row(s)", problems)
    if count == 0:
        logger.warning("Route map is empty; every guarded API request will be denied.")
    return count
