import argparse

from sqlalchemy import func, select

from storefront.db import SessionLocal, init_db
from storefront.models import Principal
from storefront.security.passwords import hash_password


def seed(email: str, password: str) -> bool:
    """Create tables and the admin principal. Returns False when it already existed."""
    init_db()
    email = email.strip().lower()
    with SessionLocal() as db:
        existing = db.execute(select(Principal).where(func.lower(Principal.email) == email)).scalar_one_or_none()
        if existing:
            existing.password_hash = hash_password(password)
            existing.active = True
            db.commit()
            return False
        db.add(Principal(email=email, password_hash=hash_password(password), active=True))
        db.commit()
        return True


def main() -> None:
    parser = argparse.ArgumentParser(description='Create tables and an admin login.')
    parser.add_argument('--email', required=True)
    parser.add_argument('--password', required=True)
    args = parser.parse_args()
    created = seed(args.email, args.password)
    print('Admin created.' if created else 'Admin already existed; password reset.')


if __name__ == '__main__':
    main()
