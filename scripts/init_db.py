import os
import sys
from datetime import datetime
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import script_session  # noqa: E402

from app.breakage.constants import ROLE_ADMIN, USER_ACTIVE  # noqa: E402
from app.breakage.models import User  # noqa: E402
from app.breakage.modules.products.models import Product  # noqa: E402
from app.breakage.security import hash_password  # noqa: E402

SAMPLE_PRODUCTS = [
    ("P001", "Still Water", 500),
    ("P002", "Sparkling Water", 500),
    ("P003", "Orange Juice", 1000),
    ("P004", "Cola", 350),
    ("P005", "Iced Tea", 1500),
]


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user and sample products in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_name = (os.environ.get("ADMIN_NAME") or "Administrator").strip()
    admin_employee_id = (os.environ.get("ADMIN_EMPLOYEE_ID") or "ADMIN-001").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///breakage.db").strip()

    with script_session(db_url) as s:
        now = datetime.utcnow()
        admin = s.query(User).filter(User.email == admin_email).one_or_none()
        if not admin:
            s.add(
                User(
                    email=admin_email,
                    password_hash=hash_password(admin_password),
                    name=admin_name,
                    employee_id=admin_employee_id,
                    role=ROLE_ADMIN,
                    status=USER_ACTIVE,
                    created_at=now,
                    updated_at=now,
                )
            )
            print(f"Created admin user {admin_email}", flush=True)
        elif admin.role != ROLE_ADMIN:
            admin.role = ROLE_ADMIN
            admin.updated_at = now
            print(f"Promoted existing user {admin_email} to admin", flush=True)

        existing = {code for (code,) in s.query(Product.code).all()}
        for code, name, capacity in SAMPLE_PRODUCTS:
            if code in existing:
                continue
            s.add(Product(code=code, name=name, capacity=capacity, created_at=now, updated_at=now))
            print(f"Added sample product {code}", flush=True)


def main() -> None:
    seed_only()
    print("Seed complete.")


if __name__ == "__main__":
    main()
