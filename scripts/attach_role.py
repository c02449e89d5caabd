#!/usr/bin/env python3
"""Attach a role to a user (idempotent).

Usage:
  python scripts/attach_role.py --email admin@adminhub.local --role "Super Admin"
"""

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy import func, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.adminhub.models import Role, User, UserRole
from scripts._db_utils import script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", default="Super Admin", help="Role name (default: Super Admin)")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///adminhub.db").strip()
    with script_session(db_url) as s:
        user = s.execute(select(User).where(func.lower(User.email) == args.email.strip().lower())).scalars().one_or_none()
        if not user:
            print(f"User not found: {args.email}")
            return
        role = s.execute(select(Role).where(Role.name == args.role)).scalars().one_or_none()
        if not role:
            print(f"Role not found: {args.role}. Run python scripts/init_db.py first.")
            return
        linked = s.execute(select(UserRole.id).where(UserRole.user_id == user.id, UserRole.role_id == role.id)).first()
        if linked:
            print(f"User already has role {role.name!r}: {args.email}")
            return
        s.add(UserRole(user_id=user.id, role_id=role.id))
        user.roles_updated_at = datetime.utcnow()
        print(f"Role {role.name!r} attached to {args.email}")


if __name__ == "__main__":
    main()
