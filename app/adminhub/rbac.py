from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.adminhub.models import User

CAPABILITY_FLAGS = ("can_create", "can_read", "can_update", "can_delete")

METHOD_FLAGS = {
    "GET": "can_read",
    "HEAD": "can_read",
    "POST": "can_create",
    "PUT": "can_update",
    "PATCH": "can_update",
    "DELETE": "can_delete",
}


@dataclass(frozen=True)
class Capability:
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False

    def allows(self, flag: str) -> bool:
        return bool(getattr(self, flag))

    def as_dict(self) -> dict[str, bool]:
        return {f: self.allows(f) for f in CAPABILITY_FLAGS}


ALL_CAPABILITIES = Capability(True, True, True, True)
NO_CAPABILITIES = Capability()


def required_flag(method: str | None) -> str | None:
    """HTTP method -> capability flag. None for methods that map to no flag (e.g. OPTIONS)."""
    return METHOD_FLAGS.get((method or "").strip().upper())


def aggregate_capabilities(rows: Iterable[Capability | None]) -> Capability:
    """OR each flag across the rows of every role the user holds; missing rows grant nothing."""
    granted = dict.fromkeys(CAPABILITY_FLAGS, False)
    for row in rows:
        if row is None:
            continue
        for f in CAPABILITY_FLAGS:
            granted[f] = granted[f] or row.allows(f)
    return Capability(**granted)


def effective_capabilities(s: "Session", user: "User") -> dict[str, dict[str, bool]]:
    """
    Per-feature capability matrix for a user, keyed by feature name.
    Policies are not applied here; this is the role grant only.
    """
    from app.adminhub.modules.access_control.models import Feature, RoleFeature

    roles = list(user.roles or [])
    if not roles:
        return {}
    if any(r.grants_all for r in roles):
        names = s.execute(select(Feature.name).order_by(Feature.name)).scalars().all()
        return {n: ALL_CAPABILITIES.as_dict() for n in names}

    rows = s.execute(
        select(RoleFeature, Feature.name)
        .join(Feature, Feature.id == RoleFeature.feature_id)
        .where(RoleFeature.role_id.in_([r.id for r in roles]))
    ).all()
    per_feature: dict[str, list[Capability]] = {}
    for rf, feature_name in rows:
        per_feature.setdefault(feature_name, []).append(
            Capability(rf.can_create, rf.can_read, rf.can_update, rf.can_delete)
        )
    return {name: aggregate_capabilities(caps).as_dict() for name, caps in sorted(per_feature.items())}
