"""
Seed Global Admin User

Creates the first global admin so accounts can be administered through
the API. Credentials come from the environment:

    SEED_ADMIN_EMAIL, SEED_ADMIN_PASSWORD,
    SEED_ADMIN_FIRST_NAME (default "Platform"), SEED_ADMIN_LAST_NAME (default "Admin")

Usage:
    cd apps/api
    SEED_ADMIN_EMAIL=... SEED_ADMIN_PASSWORD=... python scripts/seed_global_admin.py
"""

import asyncio
import os
import sys

from app.core.database import async_session_maker, close_db, init_db
from app.core.security import (
    hash_password,
    normalize_email,
    validate_email_address,
    validate_password_strength,
)
from app.modules.users.models import UserRole
from app.modules.users.repository import UserRepository


async def seed_global_admin() -> int:
    """Create the global admin user if it doesn't exist."""
    email = normalize_email(os.environ.get("SEED_ADMIN_EMAIL", ""))
    password = os.environ.get("SEED_ADMIN_PASSWORD", "")
    first_name = os.environ.get("SEED_ADMIN_FIRST_NAME", "Platform")
    last_name = os.environ.get("SEED_ADMIN_LAST_NAME", "Admin")

    email_error = validate_email_address(email)
    if email_error:
        print(f"SEED_ADMIN_EMAIL: {email_error}")
        return 1

    problems = validate_password_strength(password)
    if problems:
        print("SEED_ADMIN_PASSWORD does not meet the password policy:")
        for problem in problems:
            print(f"  - {problem}")
        return 1

    await init_db()

    try:
        async with async_session_maker() as db:
            existing_user = await UserRepository.get_by_email(db, email)
            if existing_user:
                print(f"User already exists: {email}")
                print(f"  ID: {existing_user.id}")
                return 0

            admin_user = await UserRepository.create(
                db,
                email=email,
                password_hash=hash_password(password),
                first_name=first_name,
                last_name=last_name,
                school_id=None,  # Global admins have no school
            )
            await UserRepository.add_role(db, user_id=admin_user.id, role=UserRole.GLOBAL_ADMIN)
            await db.commit()

            print("Global admin created successfully!")
            print(f"  Email: {email}")
            print(f"  Name: {first_name} {last_name}")
            print(f"  ID: {admin_user.id}")
    finally:
        await close_db()

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(seed_global_admin()))
