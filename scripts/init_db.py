import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pos.models import Base, Branch, ReceiptCounter, Role, User  # noqa: E402
from app.pos.rbac import ADMIN, ROLE_NAMES  # noqa: E402
from scripts._db_utils import create_script_engine, script_session  # noqa: E402

DEFAULT_BRANCH = "Main Store"


def seed(s) -> dict:
    """
    Roles, the admin account, the default branch and the receipt counter row.
    Safe to run repeatedly; never overwrites an existing admin password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    roles = {}
    for key, name in ROLE_NAMES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if role is None:
            role = Role(key=key, name=name)
            s.add(role)
        roles[key] = role
    s.flush()

    admin = s.query(User).filter(User.email == admin_email).one_or_none()
    created_admin = admin is None
    if admin is None:
        admin = User(
            email=admin_email,
            full_name="Administrator",
            password_hash=generate_password_hash(admin_password),
            is_active=True,
        )
        s.add(admin)
    if roles[ADMIN] not in admin.roles:
        admin.roles.append(roles[ADMIN])

    branch_name = (os.environ.get("BRANCH_NAME") or DEFAULT_BRANCH).strip()
    if s.query(Branch).count() == 0:
        s.add(Branch(name=branch_name))

    if s.get(ReceiptCounter, 1) is None:
        s.add(ReceiptCounter(id=1, counter=0))

    return {"admin_email": admin_email, "created_admin": created_admin}


def seed_only(*, database_url: str | None = None) -> None:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pos.db").strip()
    # Direct engine/session so release can run this without importing app.wsgi.
    with script_session(db_url) as s:
        result = seed(s)
    if result["created_admin"]:
        print(f"Created admin user {result['admin_email']}", flush=True)
    else:
        print(f"Admin user {result['admin_email']} already exists; password left unchanged", flush=True)


def main() -> None:
    """Local bootstrap: create tables directly (no Alembic) and seed."""
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///pos.db").strip()
    engine = create_script_engine(db_url)
    Base.metadata.create_all(engine)
    engine.dispose()
    seed_only(database_url=db_url)


if __name__ == "__main__":
    main()
