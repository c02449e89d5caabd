from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from app.adminhub.modules.access_control.errors import StoreError, StoreTimeoutError
from app.adminhub.modules.access_control.policy import Violation, evaluate
from app.adminhub.modules.access_control.routing import FeatureRef, normalize_method
from app.adminhub.modules.access_control.store import AccessStore
from app.adminhub.rbac import aggregate_capabilities, required_flag

logger = logging.getLogger(__name__)

T = TypeVar("T")

REASON_GRANTED = "access granted"
REASON_GRANTS_ALL = "grants-all role"
REASON_NO_ROUTE = "no route mapping"
REASON_UNKNOWN_USER = "unknown user"
REASON_INACTIVE_USER = "inactive user"
REASON_NO_ROLES = "no roles assigned"
REASON_UNSUPPORTED_METHOD = "unsupported method"
REASON_INSUFFICIENT_CAPABILITY = "insufficient role capability"
REASON_POLICY_VIOLATION = "policy violation"
REASON_STORE_TIMEOUT = "store timeout"
REASON_STORE_UNAVAILABLE = "store unavailable"


@dataclass
class Decision:
    allow: bool
    reason: str
    user_id: int | None
    path: str
    method: str | None
    feature: FeatureRef | None = None
    role_id: int | None = None
    violations: list[Violation] = field(default_factory=list)
    request_id: str | None = None

    @property
    def matched_feature(self) -> FeatureRef | None:
        return self.feature

    def as_dict(self) -> dict[str, Any]:
        return {
            "allow": self.allow,
            "reason": self.reason,
            "feature": self.feature.name if self.feature else None,
            "violations": [
                {"attribute": v.attribute, "expected": v.expected_value, "actual": v.actual_value}
                for v in self.violations
            ],
        }


class AccessAudit(Protocol):
    def record_access(self, decision: Decision) -> Any: ...


class AccessDecisionEngine:
    """
    Decides whether a user may call (path, method).

    Collaborators are passed in: ``store`` answers the lookups, ``audit`` persists
    exactly one access-log row per call to ``decide`` before it returns. Denials are
    return values, never exceptions. Store timeouts deny; any other store failure is
    audited as a deny and re-raised as StoreError so the caller can fail closed.

    Account status is checked before roles: an inactive user is denied even when
    one of their roles grants all. A grants-all role overrides the route map,
    capabilities and policies, never a deactivated account.
    """

    def __init__(
        self,
        store: AccessStore,
        audit: AccessAudit,
        *,
        timeout_seconds: float | None = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.audit = audit
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def decide(
        self,
        user_id: int | None,
        path: str,
        method: str | None,
        *,
        request_id: str | None = None,
    ) -> Decision:
        decision = Decision(
            allow=False,
            reason=REASON_STORE_UNAVAILABLE,
            user_id=_coerce_user_id(user_id),
            path=path,
            method=normalize_method(method),
            request_id=request_id,
        )
        started = self._clock()
        try:
            self._decide(decision, started)
        except StoreTimeoutError as e:
            logger.warning("Access decision timed out (path=%s method=%s): %s", path, decision.method, e)
            _deny(decision, REASON_STORE_TIMEOUT)
        except StoreError:
            logger.exception("Access decision store failure (path=%s method=%s)", path, decision.method)
            _deny(decision, REASON_STORE_UNAVAILABLE)
            self.audit.record_access(decision)
            raise

        if not decision.allow:
            logger.info(
                "Access denied user_id=%s %s %s reason=%r",
                decision.user_id,
                decision.method,
                path,
                decision.reason,
            )
        self.audit.record_access(decision)
        return decision

    def _call(self, started: float, fn: Callable[..., T], *args: Any) -> T:
        result = fn(*args)
        if self.timeout_seconds is not None and self._clock() - started > self.timeout_seconds:
            raise StoreTimeoutError(f"{getattr(fn, '__name__', 'lookup')} exceeded {self.timeout_seconds}s")
        return result

    def _decide(self, d: Decision, started: float) -> None:
        route = self._call(started, self.store.resolve_feature, d.path, d.method)
        user = self._call(started, self.store.get_user, d.user_id) if d.user_id is not None else None
        if user is None:
            d.user_id = None  # an id that did not resolve must not reach the access_logs FK
        if route is not None:
            d.feature = route.feature
        if user is None:
            _deny(d, REASON_UNKNOWN_USER)
            return
        if not user.active:
            _deny(d, REASON_INACTIVE_USER)
            return

        roles = self._call(started, self.store.get_user_roles, user.id)
        if not roles:
            _deny(d, REASON_NO_ROLES)
            return

        # grants-all bypasses the route map as well as capabilities and policies
        grants_all = next((r for r in roles if r.grants_all), None)
        if grants_all is not None:
            d.role_id = grants_all.id
            _allow(d, REASON_GRANTS_ALL)
            return

        if route is None:
            _deny(d, REASON_NO_ROUTE)
            return

        if len(roles) == 1:
            d.role_id = roles[0].id
        flag = required_flag(d.method)
        if flag is None:
            _deny(d, REASON_UNSUPPORTED_METHOD)
            return

        granting_role: int | None = None
        rows = []
        for role in roles:
            row = self._call(started, self.store.get_role_feature, role.id, route.feature.id)
            rows.append(row)
            if granting_role is None and row is not None and row.allows(flag):
                granting_role = role.id
        if not aggregate_capabilities(rows).allows(flag):
            _deny(d, REASON_INSUFFICIENT_CAPABILITY)
            return
        d.role_id = granting_role

        policies = self._call(started, self.store.get_policies_for_feature, route.feature.id)
        result = evaluate(user.attributes, policies)
        if not result.passed:
            d.violations = list(result.violations)
            _deny(d, REASON_POLICY_VIOLATION)
            return
        _allow(d, REASON_GRANTED)


def _allow(d: Decision, reason: str) -> None:
    d.allow = True
    d.reason = reason


def _deny(d: Decision, reason: str) -> None:
    d.allow = False
    d.reason = reason


def _coerce_user_id(user_id: Any) -> int | None:
    if user_id is None or isinstance(user_id, bool):
        return None
    try:
        return int(user_id)
    except (TypeError, ValueError):
        return None
