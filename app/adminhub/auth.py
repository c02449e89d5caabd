from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, abort, current_app, g, request, session
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.adminhub.db import db_session
from app.adminhub.models import User
from app.adminhub.modules.users.service import set_password, validate_password
from app.adminhub.rbac import effective_capabilities
from app.adminhub.security import ensure_csrf_token
from app.adminhub.utils import json_body

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

_UNAUTHENTICATED_PREFIXES = ("/health", "/healthz")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (stored on access log rows).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id", "").strip()[:64] or uuid.uuid4().hex
    if request.path.startswith(_UNAUTHENTICATED_PREFIXES):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "department": user.department,
        "region": user.region,
        "level": user.level,
        "roles": [{"id": r.id, "name": r.name, "grants_all": bool(r.grants_all)} for r in user.roles],
    }


@bp.post("/login")
def login():
    payload = json_body()
    email = str(payload.get("email") or "").strip().lower()
    password = str(payload.get("password") or "")
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return {"error": "Too many login attempts. Please wait 5 minutes."}, 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.execute(select(User).where(User.email == email)).scalars().one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            current_app.logger.info("Login failed (email=%s ip=%s request_id=%s)", email, ip, g.request_id)
            return {"error": "Invalid credentials."}, 401

        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        _login_attempts[ip].clear()
        current_app.logger.info("Login user_id=%s request_id=%s", user.id, g.request_id)
        return {"user": _user_summary(user), "csrf_token": ensure_csrf_token()}
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        current_app.logger.info("Logout user_id=%s", user.id)
    session.clear()
    return {"ok": True}


@bp.get("/csrf")
def csrf():
    return {"csrf_token": ensure_csrf_token()}


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if user is None:
        abort(401)
    return {"user": _user_summary(user), "capabilities": effective_capabilities(db_session(), user)}


@bp.post("/password")
def change_password():
    user = getattr(g, "current_user", None)
    if user is None:
        abort(401)
    payload = json_body()
    current = str(payload.get("current_password") or "")
    new = str(payload.get("new_password") or "")
    if not check_password_hash(user.password_hash, current):
        return {"errors": ["Current password is incorrect."]}, 400
    errors = validate_password(new)
    if errors:
        return {"errors": errors}, 400
    s = db_session()
    set_password(s, user, new, user)
    s.commit()
    return {"ok": True}
