"""Read-only views over the access log, policy violations and change history."""
from __future__ import annotations

from flask import Blueprint, abort, request

from app.adminhub.audit import (
    CHANGE_ACTIONS,
    query_access_logs,
    query_change_history,
    query_policy_violations,
    snapshot,
)
from app.adminhub.db import db_session
from app.adminhub.utils import pagination_args, query_int

bp = Blueprint("audit_logs", __name__)


def _rendered(result: dict) -> dict:
    result["items"] = [snapshot(r) for r in result["items"]]
    return result


@bp.get("/access-logs")
def access_logs():
    decision = (request.args.get("decision") or "").strip().lower() or None
    if decision is not None and decision not in ("allow", "deny"):
        abort(400, description="decision must be 'allow' or 'deny'.")
    page, page_size = pagination_args()
    return _rendered(
        query_access_logs(
            db_session(),
            user_id=query_int("user_id"),
            feature_id=query_int("feature_id"),
            decision=decision,
            path=(request.args.get("path") or "").strip() or None,
            page=page,
            page_size=page_size,
        )
    )


@bp.get("/policy-violations")
def policy_violations():
    page, page_size = pagination_args()
    return _rendered(
        query_policy_violations(
            db_session(),
            user_id=query_int("user_id"),
            feature_id=query_int("feature_id"),
            policy_id=query_int("policy_id"),
            page=page,
            page_size=page_size,
        )
    )


@bp.get("/change-history")
def change_history():
    action = (request.args.get("action") or "").strip().lower() or None
    if action is not None and action not in CHANGE_ACTIONS:
        abort(400, description=f"action must be one of {', '.join(CHANGE_ACTIONS)}.")
    page, page_size = pagination_args()
    return _rendered(
        query_change_history(
            db_session(),
            user_id=query_int("user_id"),
            table_name=(request.args.get("table_name") or "").strip() or None,
            record_id=query_int("record_id"),
            action=action,
            page=page,
            page_size=page_size,
        )
    )
