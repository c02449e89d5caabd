from __future__ import annotations

from flask import Blueprint, abort

from app.adminhub.api import change_reason, commit_or_conflict, current_user, get_or_404, register_crud
from app.adminhub.audit import query_access_logs, snapshot
from app.adminhub.db import db_session
from app.adminhub.models import Role, User
from app.adminhub.modules.users.service import (
    USER_FIELDS,
    assign_role,
    create_user,
    delete_user,
    remove_role,
    update_user,
    validate_user,
)
from app.adminhub.utils import clean_str, json_body, pagination_args, parse_bool, parse_int

bp = Blueprint("users", __name__)

register_crud(
    bp,
    "/users",
    User,
    fields=USER_FIELDS,
    validate=validate_user,
    create=create_user,
    update=update_user,
    delete=delete_user,
    filters={"active": parse_bool, "department": clean_str, "region": clean_str},
    order_by=User.email,
)


def _role_summary(role: Role) -> dict:
    return {"id": role.id, "name": role.name, "grants_all": bool(role.grants_all)}


@bp.get("/users/<int:user_id>/roles")
def user_roles(user_id: int):
    s = db_session()
    user = get_or_404(s, User, user_id)
    return {"user_id": user.id, "roles": [_role_summary(r) for r in sorted(user.roles, key=lambda r: r.id)]}


@bp.post("/users/<int:user_id>/roles")
def user_roles_assign(user_id: int):
    s = db_session()
    user = get_or_404(s, User, user_id)
    payload = json_body()
    try:
        role_id = parse_int(payload.get("role_id"))
    except ValueError:
        role_id = None
    if role_id is None:
        return {"errors": ["role_id is required."]}, 400
    role = s.get(Role, role_id)
    if role is None:
        return {"errors": [f"Role {role_id} not found."]}, 400
    with commit_or_conflict(s):
        assign_role(s, user, role, current_user(), change_reason(payload))
    return {"user_id": user.id, "roles": [_role_summary(r) for r in sorted(user.roles, key=lambda r: r.id)]}, 201


@bp.delete("/users/<int:user_id>/roles/<int:role_id>")
def user_roles_remove(user_id: int, role_id: int):
    s = db_session()
    user = get_or_404(s, User, user_id)
    role = get_or_404(s, Role, role_id)
    reason = change_reason(json_body())
    with commit_or_conflict(s):
        removed = remove_role(s, user, role, current_user(), reason)
    if not removed:
        abort(404, description=f"User {user_id} does not hold role {role_id}.")
    return {"user_id": user.id, "roles": [_role_summary(r) for r in sorted(user.roles, key=lambda r: r.id)]}


@bp.get("/users/<int:user_id>/access-logs")
def user_access_logs(user_id: int):
    s = db_session()
    get_or_404(s, User, user_id)
    page, page_size = pagination_args()
    result = query_access_logs(s, user_id=user_id, page=page, page_size=page_size)
    result["items"] = [snapshot(r) for r in result["items"]]
    return result
