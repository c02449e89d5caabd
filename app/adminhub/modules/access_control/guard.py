from __future__ import annotations

from flask import Flask, current_app, g, jsonify, request

from app.adminhub.modules.access_control.engine import AccessDecisionEngine
from app.adminhub.modules.access_control.errors import StoreError
from app.adminhub.modules.access_control.store import SqlAccessStore


def _under_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def _deny_response(status: int, decision=None, message: str | None = None):
    body = decision.as_dict() if decision is not None else {"allow": False, "reason": message}
    body["request_id"] = getattr(g, "request_id", None)
    return jsonify(body), status


def check_request_access():
    """
    before_request hook: every call under API_PREFIX goes through the decision engine.
    Returns a response to short-circuit the request, or None to let it through.
    """
    prefix = current_app.config.get("API_PREFIX") or "/api/v1"
    if not _under_prefix(request.path, prefix) or request.method == "OPTIONS":
        return None

    user = getattr(g, "current_user", None)
    if user is None:
        return _deny_response(401, message="authentication required")

    sm = current_app.extensions["sqlalchemy_sessionmaker"]
    timeout_ms = int(current_app.config.get("ACCESS_DECISION_TIMEOUT_MS") or 0)
    s = sm()
    try:
        engine = AccessDecisionEngine(
            SqlAccessStore(s),
            current_app.extensions["audit_trail"],
            timeout_seconds=timeout_ms / 1000.0 if timeout_ms > 0 else None,
        )
        decision = engine.decide(user.id, request.path, request.method, request_id=getattr(g, "request_id", None))
    except StoreError:
        g.access_decision = None
        return _deny_response(503, message="access store unavailable")
    finally:
        s.close()

    g.access_decision = decision
    if not decision.allow:
        return _deny_response(403, decision)
    return None


def install_access_guard(app: Flask) -> None:
    app.before_request(check_request_access)
