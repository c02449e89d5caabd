from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.adminhub.audit import record_change
from app.adminhub.models import Role, User, UserRole
from app.adminhub.modules.access_control.service import create_record, delete_record, record_cascade, update_record
from app.adminhub.utils import clean_str, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8

# Attributes the policy evaluator reads; changing them must invalidate cached decisions.
POLICY_ATTRIBUTES = ("department", "region", "level", "active")

USER_FIELDS = {
    "name": clean_str,
    "email": lambda v: (clean_str(v) or "").lower() or None,
    "password": lambda v: v if isinstance(v, str) else str(v),
    "active": parse_bool,
    "department": clean_str,
    "region": clean_str,
    "level": parse_int,
}


def validate_password(password: str | None) -> list[str]:
    if not password:
        return ["Password is required."]
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters."]
    return []


def validate_user(s: "Session", values: dict[str, Any], user: User | None = None) -> list[str]:
    errors = []
    name = values.get("name") if "name" in values else (user.name if user else None)
    if not name:
        errors.append("Name is required.")
    elif len(name) > 100:
        errors.append("Name must be at most 100 characters.")

    email = values.get("email") if "email" in values else (user.email if user else None)
    if not email:
        errors.append("Email is required.")
    elif not _EMAIL_RE.match(email):
        errors.append(f"Email {email!r} is not valid.")
    elif user is None or "email" in values:
        stmt = select(User.id).where(User.email == email)
        if user is not None:
            stmt = stmt.where(User.id != user.id)
        if s.execute(stmt).first() is not None:
            errors.append(f"Email {email!r} is already in use.")

    if user is None or "password" in values:
        errors.extend(validate_password(values.get("password")))
    level = values.get("level")
    if level is not None and level < 0:
        errors.append("Level must be zero or positive.")
    return errors


def _hash_password(values: dict[str, Any]) -> dict[str, Any]:
    values = dict(values)
    password = values.pop("password", None)
    if password:
        values["password_hash"] = generate_password_hash(password)
    return values


def create_user(s: "Session", values: dict[str, Any], actor: User | None) -> User:
    values = _hash_password(values)
    values.setdefault("active", True)
    now = datetime.utcnow()
    return create_record(s, User(created_at=now, updated_at=now, roles_updated_at=now), values, actor)


def update_user(s: "Session", user: User, values: dict[str, Any], actor: User | None, reason: str | None = None) -> User:
    values = _hash_password(values)
    values["updated_at"] = datetime.utcnow()
    changed = update_record(s, user, values, actor, reason)
    if any(k in changed for k in POLICY_ATTRIBUTES):
        user.roles_updated_at = values["updated_at"]
    return user


def delete_user(s: "Session", user: User, actor: User | None, reason: str | None = None) -> None:
    links = s.execute(select(UserRole).where(UserRole.user_id == user.id).order_by(UserRole.id)).scalars().all()
    record_cascade(s, actor, list(links), reason)
    delete_record(s, user, actor, reason)


def set_password(s: "Session", user: User, password: str, actor: User | None) -> None:
    """Password change; history records that it happened, never the hash."""
    now = datetime.utcnow()
    user.password_hash = generate_password_hash(password)
    user.updated_at = now
    s.flush()
    record_change(
        s,
        actor=actor,
        table_name=User.__tablename__,
        record_id=user.id,
        action="update",
        old_values=None,
        new_values={"password": "changed"},
        reason="password change",
    )


# ---------- Role assignment ----------
def find_assignment(s: "Session", user: User, role: Role) -> UserRole | None:
    return s.execute(
        select(UserRole).where(UserRole.user_id == user.id, UserRole.role_id == role.id)
    ).scalars().first()


def assign_role(s: "Session", user: User, role: Role, actor: User | None, reason: str | None = None) -> UserRole:
    link = find_assignment(s, user, role)
    if link is not None:
        return link
    link = UserRole(user_id=user.id, role_id=role.id)
    s.add(link)
    user.roles_updated_at = datetime.utcnow()
    s.flush()
    s.expire(user, ["roles"])
    record_change(
        s,
        actor=actor,
        table_name=UserRole.__tablename__,
        record_id=link.id,
        action="create",
        new_values={"user_id": user.id, "role_id": role.id},
        reason=reason,
    )
    return link


def remove_role(s: "Session", user: User, role: Role, actor: User | None, reason: str | None = None) -> bool:
    link = find_assignment(s, user, role)
    if link is None:
        return False
    link_id = link.id
    s.delete(link)
    user.roles_updated_at = datetime.utcnow()
    s.flush()
    s.expire(user, ["roles"])
    record_change(
        s,
        actor=actor,
        table_name=UserRole.__tablename__,
        record_id=link_id,
        action="delete",
        old_values={"user_id": user.id, "role_id": role.id},
        reason=reason,
    )
    return True
