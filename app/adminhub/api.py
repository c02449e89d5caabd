"""
Shared plumbing for the JSON admin endpoints: current user, commits, and a
small helper that wires list/get/create/update/delete views for one table.
"""
from __future__ import annotations

from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

from flask import Blueprint, abort, g, jsonify, request
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.adminhub.audit import snapshot
from app.adminhub.db import db_session
from app.adminhub.models import User
from app.adminhub.utils import coerce_payload, json_body, pagination_args


def current_user() -> User | None:
    return getattr(g, "current_user", None)


def change_reason(payload: dict | None = None) -> str | None:
    reason = (payload or {}).get("reason") or request.headers.get("X-Change-Reason") or ""
    return str(reason).strip()[:1000] or None


def validation_failed(errors: list[str]):
    return jsonify({"errors": errors}), 400


@contextmanager
def commit_or_conflict(s) -> Generator[None, None, None]:
    """
    Run a mutation and commit it. A unique/foreign-key violation that slipped past
    validation (at flush or at commit) rolls back, which drops staged history, and becomes 409.
    """
    try:
        yield
        s.commit()
    except IntegrityError as e:
        s.rollback()
        abort(409, description=f"Conflicts with existing data: {e.orig}")


def get_or_404(s, model, obj_id: int):
    obj = s.get(model, obj_id)
    if obj is None:
        abort(404, description=f"{model.__name__} {obj_id} not found.")
    return obj


def register_crud(
    bp: Blueprint,
    url: str,
    model: type,
    *,
    fields: dict[str, Callable[[Any], Any]],
    validate: Callable[..., list[str]],
    create: Callable[..., Any],
    update: Callable[..., Any],
    delete: Callable[..., None],
    filters: dict[str, Callable[[str], Any]] | None = None,
    order_by: Any = None,
) -> None:
    """
    Wire GET/POST on ``url`` and GET/PUT/PATCH/DELETE on ``url/<id>``.
    Service functions follow the (s, values, user) / (s, obj, values, user, reason) convention.
    """
    name = model.__tablename__
    order_col = order_by if order_by is not None else model.id

    def list_view():
        s = db_session()
        page, page_size = pagination_args()
        stmt = select(model)
        for key, conv in (filters or {}).items():
            raw = request.args.get(key)
            if raw is None or not raw.strip():
                continue
            try:
                stmt = stmt.where(getattr(model, key) == conv(raw))
            except ValueError:
                abort(400, description=f"Invalid filter value for {key}.")
        total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = s.execute(stmt.order_by(order_col).offset((page - 1) * page_size).limit(page_size)).scalars().all()
        return {"items": [snapshot(r) for r in rows], "total": total, "page": page, "page_size": page_size}

    def get_view(obj_id: int):
        s = db_session()
        return snapshot(get_or_404(s, model, obj_id))

    def create_view():
        s = db_session()
        payload = json_body()
        values, errors = coerce_payload(payload, fields)
        errors.extend(validate(s, values))
        if errors:
            return validation_failed(errors)
        with commit_or_conflict(s):
            obj = create(s, values, current_user())
        return snapshot(obj), 201

    def update_view(obj_id: int):
        s = db_session()
        obj = get_or_404(s, model, obj_id)
        payload = json_body()
        values, errors = coerce_payload(payload, fields)
        errors.extend(validate(s, values, obj))
        if errors:
            return validation_failed(errors)
        with commit_or_conflict(s):
            update(s, obj, values, current_user(), change_reason(payload))
        return snapshot(obj)

    def delete_view(obj_id: int):
        s = db_session()
        obj = get_or_404(s, model, obj_id)
        reason = change_reason(json_body())
        with commit_or_conflict(s):
            delete(s, obj, current_user(), reason)
        return {"deleted": obj_id}

    bp.add_url_rule(url, f"{name}_list", list_view, methods=["GET"])
    bp.add_url_rule(url, f"{name}_create", create_view, methods=["POST"])
    bp.add_url_rule(f"{url}/<int:obj_id>", f"{name}_get", get_view, methods=["GET"])
    bp.add_url_rule(f"{url}/<int:obj_id>", f"{name}_update", update_view, methods=["PUT", "PATCH"])
    bp.add_url_rule(f"{url}/<int:obj_id>", f"{name}_delete", delete_view, methods=["DELETE"])
