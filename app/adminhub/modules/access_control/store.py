"""
Store access for the decision engine.

Returns frozen snapshots rather than ORM rows so the engine and the policy
evaluator never trigger lazy loads, and so tests can substitute an in-memory store.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.adminhub.modules.access_control.errors import StoreError, StoreTimeoutError
from app.adminhub.modules.access_control.policy import PolicyRule
from app.adminhub.modules.access_control.routing import FeatureRef, RouteEntry, RouteMap
from app.adminhub.rbac import Capability

T = TypeVar("T")

# Postgres query_canceled (statement_timeout) and lock_not_available
_TIMEOUT_SQLSTATES = {"57014", "55P03"}


@dataclass(frozen=True)
class UserRecord:
    id: int
    active: bool
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RoleRecord:
    id: int
    name: str
    grants_all: bool = False


class AccessStore(Protocol):
    def get_user(self, user_id: int) -> UserRecord | None: ...

    def get_user_roles(self, user_id: int) -> list[RoleRecord]: ...

    def get_role_feature(self, role_id: int, feature_id: int) -> Capability | None: ...

    def get_policies_for_feature(self, feature_id: int) -> list[PolicyRule]: ...

    def resolve_feature(self, path: str, method: str | None) -> RouteEntry | None: ...


def is_timeout_error(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TIMEOUT_SQLSTATES:
        return True
    text = str(orig or exc).lower()
    return "timeout" in text or "timed out" in text or "database is locked" in text


def _translate_errors(fn: Callable[..., T]) -> Callable[..., T]:
    @wraps(fn)
    def wrapped(self: "SqlAccessStore", *args: Any, **kwargs: Any) -> T:
        try:
            return fn(self, *args, **kwargs)
        except (DBAPIError, SQLAlchemyError) as e:
            self.s.rollback()
            if is_timeout_error(e):
                raise StoreTimeoutError(f"{fn.__name__} timed out: {e}") from e
            raise StoreError(f"{fn.__name__} failed: {e}") from e

    return wrapped


class SqlAccessStore:
    """SQLAlchemy implementation of the identity, role/feature, policy and route lookups."""

    def __init__(self, s: Session):
        self.s = s

    @_translate_errors
    def get_user(self, user_id: int) -> UserRecord | None:
        from app.adminhub.models import User

        user = self.s.get(User, user_id)
        if user is None:
            return None
        return UserRecord(id=user.id, active=bool(user.active), attributes=user.attributes())

    @_translate_errors
    def get_user_roles(self, user_id: int) -> list[RoleRecord]:
        from app.adminhub.models import Role, UserRole

        rows = self.s.execute(
            select(Role.id, Role.name, Role.grants_all)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
            .order_by(Role.id)
        ).all()
        return [RoleRecord(id=rid, name=name, grants_all=bool(grants_all)) for rid, name, grants_all in rows]

    @_translate_errors
    def get_role_feature(self, role_id: int, feature_id: int) -> Capability | None:
        from app.adminhub.modules.access_control.models import RoleFeature

        rf = self.s.execute(
            select(RoleFeature).where(RoleFeature.role_id == role_id, RoleFeature.feature_id == feature_id)
        ).scalars().first()
        if rf is None:
            return None
        return Capability(
            can_create=bool(rf.can_create),
            can_read=bool(rf.can_read),
            can_update=bool(rf.can_update),
            can_delete=bool(rf.can_delete),
        )

    @_translate_errors
    def get_policies_for_feature(self, feature_id: int) -> list[PolicyRule]:
        from app.adminhub.modules.access_control.models import Policy

        rows = self.s.execute(select(Policy).where(Policy.feature_id == feature_id).order_by(Policy.id)).scalars()
        return [
            PolicyRule(id=p.id, feature_id=p.feature_id, attribute=p.attribute, operator=p.operator, value=p.value)
            for p in rows
        ]

    @_translate_errors
    def load_routes(self) -> list[RouteEntry]:
        from app.adminhub.modules.access_control.models import Feature, RouteFeature

        rows = self.s.execute(
            select(RouteFeature.id, RouteFeature.path, RouteFeature.method, Feature.id, Feature.name)
            .join(Feature, Feature.id == RouteFeature.feature_id)
            .order_by(RouteFeature.id)
        ).all()
        return [
            RouteEntry(id=rid, path=path, method=method, feature=FeatureRef(id=fid, name=fname))
            for rid, path, method, fid, fname in rows
        ]

    def resolve_feature(self, path: str, method: str | None) -> RouteEntry | None:
        """
        Loads the route map on every decision: one indexed join over a table of a few
        hundred rows at most. No per-process cache, so an admin edit to route_features
        takes effect on the next request in every gunicorn worker.
        Malformed rows are rejected at admin/startup time; here they are logged and skipped.
        """
        route_map = RouteMap.from_entries(self.load_routes(), strict=False)
        return route_map.resolve(path, method)
