import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.adminhub.models import Role, User, UserRole
from app.adminhub.modules.access_control.models import Feature, FeatureCategory, Policy, RoleFeature, RouteFeature
from scripts._db_utils import script_session

CATEGORIES = [
    # (name, slug, color, icon, sort_order)
    ("Authentication", "authentication", "#3B82F6", "IconShield", 1),
    ("User Management", "user-management", "#10B981", "IconUsers", 2),
    ("Human Resources", "human-resources", "#F59E0B", "IconBriefcase", 3),
    ("System Administration", "system-administration", "#EF4444", "IconSettings", 4),
]

FEATURES = [
    # (name, description, category slug)
    ("User Management", "Create, edit and remove user accounts", "user-management"),
    ("Profile Management", "View and edit one's own profile", "user-management"),
    ("Role Management", "Manage roles and role assignments", "user-management"),
    ("System Configuration", "Features, policies and the route map", "system-administration"),
    ("Audit Logs", "Access logs, policy violations and change history", "system-administration"),
    ("Employee Performance", "Performance reviews", "human-resources"),
    ("Payroll Management", "Payroll runs and salary data", "human-resources"),
]

ROLES = [
    # (name, description, grants_all)
    ("Super Admin", "Unrestricted access to every feature", True),
    ("Admin", "Broad administrative access without destructive rights", False),
    ("HR Manager", "Human resources features", False),
    ("Manager", "Team leads", False),
    ("Employee", "Regular staff", False),
]

ROLE_FEATURES = [
    # (role, feature, create, read, update, delete)
    ("Admin", "User Management", True, True, True, False),
    ("Admin", "Role Management", False, True, True, False),
    ("Admin", "System Configuration", False, True, True, False),
    ("Admin", "Audit Logs", False, True, False, False),
    ("HR Manager", "User Management", True, True, True, False),
    ("HR Manager", "Employee Performance", True, True, True, False),
    ("HR Manager", "Payroll Management", True, True, True, False),
    ("Manager", "Employee Performance", False, True, True, False),
    ("Manager", "Profile Management", False, True, True, False),
    ("Employee", "Profile Management", False, True, True, False),
]

POLICIES = [
    # (feature, attribute, operator, value)
    ("Employee Performance", "level", ">=", "3"),
    ("Payroll Management", "department", "in", "HR,Finance"),
]

ROUTES = [
    # (path, method or None for every method, feature)
    ("/api/v1/users", None, "User Management"),
    ("/api/v1/users/:id", None, "User Management"),
    ("/api/v1/users/:id/roles", None, "Role Management"),
    ("/api/v1/users/:id/roles/:role_id", None, "Role Management"),
    ("/api/v1/users/:id/access-logs", None, "Audit Logs"),
    ("/api/v1/roles", None, "Role Management"),
    ("/api/v1/roles/:id", None, "Role Management"),
    ("/api/v1/feature-categories", None, "System Configuration"),
    ("/api/v1/feature-categories/:id", None, "System Configuration"),
    ("/api/v1/features", None, "System Configuration"),
    ("/api/v1/features/:id", None, "System Configuration"),
    ("/api/v1/role-features", None, "Role Management"),
    ("/api/v1/role-features/:id", None, "Role Management"),
    ("/api/v1/policies", None, "System Configuration"),
    ("/api/v1/policies/:id", None, "System Configuration"),
    ("/api/v1/route-features", None, "System Configuration"),
    ("/api/v1/route-features/:id", None, "System Configuration"),
    ("/api/v1/access-logs", "GET", "Audit Logs"),
    ("/api/v1/policy-violations", "GET", "Audit Logs"),
    ("/api/v1/change-history", "GET", "Audit Logs"),
]


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed categories/features/roles/capabilities/policies/route map and the admin user
    in an idempotent way. Existing rows are left untouched (admin password included).
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@adminhub.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///adminhub.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        def ensure_category(name: str, slug: str, color: str, icon: str, sort_order: int) -> FeatureCategory:
            c = s.execute(select(FeatureCategory).where(FeatureCategory.slug == slug)).scalars().one_or_none()
            if not c:
                c = FeatureCategory(name=name, slug=slug, color=color, icon=icon, sort_order=sort_order, is_active=True)
                s.add(c)
                s.flush()
            return c

        categories = {row[1]: ensure_category(*row) for row in CATEGORIES}

        def ensure_feature(name: str, description: str, category_slug: str) -> Feature:
            f = s.execute(select(Feature).where(Feature.name == name)).scalars().one_or_none()
            if not f:
                f = Feature(name=name, description=description, category_id=categories[category_slug].id)
                s.add(f)
                s.flush()
            return f

        features = {row[0]: ensure_feature(*row) for row in FEATURES}

        def ensure_role(name: str, description: str, grants_all: bool) -> Role:
            r = s.execute(select(Role).where(Role.name == name)).scalars().one_or_none()
            if not r:
                r = Role(name=name, description=description, grants_all=grants_all)
                s.add(r)
                s.flush()
            return r

        roles = {row[0]: ensure_role(*row) for row in ROLES}

        for role_name, feature_name, c, r, u, d in ROLE_FEATURES:
            role, feature = roles[role_name], features[feature_name]
            exists = s.execute(
                select(RoleFeature.id).where(RoleFeature.role_id == role.id, RoleFeature.feature_id == feature.id)
            ).first()
            if not exists:
                s.add(
                    RoleFeature(role_id=role.id, feature_id=feature.id, can_create=c, can_read=r, can_update=u, can_delete=d)
                )

        for feature_name, attribute, operator, value in POLICIES:
            feature = features[feature_name]
            exists = s.execute(
                select(Policy.id).where(
                    Policy.feature_id == feature.id,
                    Policy.attribute == attribute,
                    Policy.operator == operator,
                    Policy.value == value,
                )
            ).first()
            if not exists:
                s.add(Policy(feature_id=feature.id, attribute=attribute, operator=operator, value=value))

        for path, method, feature_name in ROUTES:
            stmt = select(RouteFeature.id).where(RouteFeature.path == path)
            stmt = stmt.where(RouteFeature.method.is_(None) if method is None else RouteFeature.method == method)
            if not s.execute(stmt).first():
                s.add(RouteFeature(path=path, method=method, feature_id=features[feature_name].id))

        # Admin user
        user = s.execute(select(User).where(User.email == admin_email)).scalars().one_or_none()
        if not user:
            user = User(
                name="Administrator",
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                active=True,
                department="IT",
                level=5,
            )
            s.add(user)
            s.flush()
        super_admin = roles["Super Admin"]
        linked = s.execute(
            select(UserRole.id).where(UserRole.user_id == user.id, UserRole.role_id == super_admin.id)
        ).first()
        if not linked:
            s.add(UserRole(user_id=user.id, role_id=super_admin.id))

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
