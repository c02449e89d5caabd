from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, func, inspect as sa_inspect, select
from sqlalchemy.orm import Session

from app.adminhub.models import AccessLog, ChangeHistory, PolicyViolation, User

if TYPE_CHECKING:
    from app.adminhub.modules.access_control.engine import Decision

logger = logging.getLogger(__name__)

CHANGE_ACTIONS = ("create", "update", "delete")
_PENDING_CHANGES = "adminhub.pending_changes"
_SNAPSHOT_EXCLUDE = frozenset({"password_hash"})


def _json_safe(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, Decimal):
        return str(v)
    return v


def snapshot(obj: Any) -> dict[str, Any]:
    """Column values of a mapped row as a JSON-safe dict (secrets excluded)."""
    mapper = sa_inspect(obj).mapper
    return {
        attr.key: _json_safe(getattr(obj, attr.key))
        for attr in mapper.column_attrs
        if attr.key not in _SNAPSHOT_EXCLUDE
    }


def record_change(
    s: Session,
    *,
    actor: User | None,
    table_name: str,
    record_id: int,
    action: str,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    reason: str | None = None,
) -> None:
    """
    Stage a change-history entry on the caller's session.

    The entry is written by the AuditTrail once the session commits and dropped
    if it rolls back, so history only describes mutations that actually happened.
    """
    if action not in CHANGE_ACTIONS:
        raise ValueError(f"action must be one of {CHANGE_ACTIONS} (got {action!r})")
    s.info.setdefault(_PENDING_CHANGES, []).append(
        {
            "user_id": actor.id if actor else None,
            "table_name": table_name,
            "record_id": int(record_id),
            "action": action,
            "old_values": old_values,
            "new_values": new_values,
            "reason": reason,
        }
    )


class AuditTrail:
    """
    Append-only writer for access_logs, policy_violations and change_history.

    Writes go through their own short-lived session so they survive a rollback of
    the request's unit of work. A failed write is logged and counted, never raised:
    a missing audit row is a compliance gap, not a reason to fail the request.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self.write_failures = 0

    def _failed(self, what: str, **context: Any) -> None:
        with self._lock:
            self.write_failures += 1
        logger.exception("Audit write failed (%s) %s", what, context)

    def record_access(self, decision: "Decision") -> AccessLog | None:
        s: Session | None = None
        try:
            s = self._session_factory()
            log = AccessLog(
                user_id=decision.user_id,
                role_id=decision.role_id,
                feature_id=decision.feature.id if decision.feature else None,
                path=decision.path[:255],
                method=decision.method,
                decision="allow" if decision.allow else "deny",
                reason=decision.reason,
                request_id=decision.request_id,
            )
            s.add(log)
            for v in decision.violations:
                s.add(
                    PolicyViolation(
                        user_id=decision.user_id,
                        feature_id=v.feature_id,
                        policy_id=v.policy_id,
                        attribute=v.attribute,
                        expected_value=v.expected_value,
                        actual_value=v.actual_value,
                    )
                )
            s.commit()
            return log
        except Exception:
            if s is not None:
                s.rollback()
            self._failed("access_log", path=decision.path, user_id=decision.user_id, decision=decision.allow)
            return None
        finally:
            if s is not None:
                s.close()

    def write_changes(self, entries: list[dict[str, Any]]) -> None:
        s: Session | None = None
        try:
            s = self._session_factory()
            # An actor who deleted their own account no longer satisfies the FK.
            actor_ids = {e["user_id"] for e in entries if e["user_id"] is not None}
            present = set(s.execute(select(User.id).where(User.id.in_(actor_ids))).scalars()) if actor_ids else set()
            for e in entries:
                if e["user_id"] is not None and e["user_id"] not in present:
                    e = {**e, "user_id": None}
                s.add(ChangeHistory(**e))
            s.commit()
        except Exception:
            if s is not None:
                s.rollback()
            self._failed("change_history", entries=[(e["table_name"], e["record_id"], e["action"]) for e in entries])
        finally:
            if s is not None:
                s.close()

    def install(self) -> None:
        """Hook staged change-history entries onto commit/rollback of sessions made by the factory."""

        @event.listens_for(self._session_factory, "after_commit")
        def _write_staged(session: Session) -> None:
            pending = session.info.pop(_PENDING_CHANGES, None)
            if pending:
                self.write_changes(pending)

        @event.listens_for(self._session_factory, "after_rollback")
        def _drop_staged(session: Session) -> None:
            dropped = session.info.pop(_PENDING_CHANGES, None)
            if dropped:
                logger.debug("Dropped %d staged change(s) after rollback", len(dropped))


def _page(s: Session, stmt, order_col, page: int, page_size: int) -> dict[str, Any]:
    total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = (
        s.execute(stmt.order_by(order_col.desc()).offset((page - 1) * page_size).limit(page_size))
        .scalars()
        .all()
    )
    return {"items": rows, "total": total, "page": page, "page_size": page_size}


def query_access_logs(
    s: Session,
    *,
    user_id: int | None = None,
    feature_id: int | None = None,
    decision: str | None = None,
    path: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> dict[str, Any]:
    stmt = select(AccessLog)
    if user_id:
        stmt = stmt.where(AccessLog.user_id == user_id)
    if feature_id:
        stmt = stmt.where(AccessLog.feature_id == feature_id)
    if decision:
        stmt = stmt.where(AccessLog.decision == decision)
    if path:
        stmt = stmt.where(AccessLog.path.ilike(f"%{path}%"))
    return _page(s, stmt, AccessLog.id, page, page_size)


def query_policy_violations(
    s: Session,
    *,
    user_id: int | None = None,
    feature_id: int | None = None,
    policy_id: int | None = None,
    page: int = 1,
    page_size: int = 50,
) -> dict[str, Any]:
    stmt = select(PolicyViolation)
    if user_id:
        stmt = stmt.where(PolicyViolation.user_id == user_id)
    if feature_id:
        stmt = stmt.where(PolicyViolation.feature_id == feature_id)
    if policy_id:
        stmt = stmt.where(PolicyViolation.policy_id == policy_id)
    return _page(s, stmt, PolicyViolation.id, page, page_size)


def query_change_history(
    s: Session,
    *,
    user_id: int | None = None,
    table_name: str | None = None,
    record_id: int | None = None,
    action: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> dict[str, Any]:
    stmt = select(ChangeHistory)
    if user_id:
        stmt = stmt.where(ChangeHistory.user_id == user_id)
    if table_name:
        stmt = stmt.where(ChangeHistory.table_name == table_name)
    if record_id:
        stmt = stmt.where(ChangeHistory.record_id == record_id)
    if action:
        stmt = stmt.where(ChangeHistory.action == action)
    return _page(s, stmt, ChangeHistory.id, page, page_size)
