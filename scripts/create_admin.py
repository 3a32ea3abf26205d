#!/usr/bin/env python3
"""
Script to create the bootstrap administrator.

Reads ADMIN_EMAIL / ADMIN_ACCESS_CODE from the environment (or .env). Running
it again is a no-op once the administrator exists.
"""
import sys
from pathlib import Path
from typing import Tuple

# Add parent directory to the system path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.orm import Session

from database.connection import Database
from database.models import User, UserRole
from services.user_service import UserService
import config


def ensure_admin(db: Session, email: str, access_code: str, name: str = "Administrator") -> Tuple[User, bool]:
    """
    Return (administrator, created). An existing principal with this email is
    returned unchanged.
    """
    existing = UserService.get_user_by_email(db, email)
    if existing:
        return existing, False
    user = UserService.create_user(
        db=db,
        name=name,
        email=email,
        role=UserRole.ADMINISTRATOR,
        access_code=access_code,
        created_by=None,
    )
    return user, True


def create_admin():
    """Create the bootstrap administrator."""
    config.db = Database(
        database_url=config.DATABASE_URL,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW
    )
    config.db.create_tables()

    print("Creating administrator...")
    print("=" * 50)

    if not config.ADMIN_EMAIL or not config.ADMIN_ACCESS_CODE:
        print("Error: ADMIN_EMAIL and ADMIN_ACCESS_CODE are required")
        sys.exit(1)

    try:
        with config.db.get_session() as db:
            user, created = ensure_admin(db, config.ADMIN_EMAIL, config.ADMIN_ACCESS_CODE)
            if created:
                print("\n✓ Administrator created successfully!")
            else:
                print("\nAdministrator already exists, nothing to do.")
                if user.role != UserRole.ADMINISTRATOR:
                    print(f"  Warning: {user.email} has role {user.role.value}")
            print(f"  Email: {user.email}")
            print(f"  Role: {user.role.value}")
    except ValueError as e:
        print(f"\n✗ Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    create_admin()
