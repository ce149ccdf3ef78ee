"""
User Repository

Database operations for user management.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import normalize_email
from app.modules.users.models import RoleAssignment, User, UserRole

logger = logging.getLogger(__name__)


class UserRepository:
    """Repository for user database operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        email: str,
        password_hash: str | None,
        first_name: str,
        last_name: str,
        school_id: str | None = None,
        phone: str | None = None,
        teacher_id: str | None = None,
        student_id: str | None = None,
        is_active: bool = True,
        mfa_enabled: bool = False,
        invitation_token_hash: str | None = None,
        invitation_expires_at: datetime | None = None,
    ) -> User:
        """
        Create a new user record.

        Args:
            db: Database session
            email: User's email address (unique, stored lowercase)
            password_hash: Hashed password, or None for invited users
            first_name: User's first name
            last_name: User's last name
            school_id: School ID (required for school-bound roles)
            phone: Phone number (optional)
            teacher_id: Linked teacher record (optional)
            student_id: Linked student record (optional)
            is_active: Whether user is active
            mfa_enabled: Whether sign-in requires an emailed code
            invitation_token_hash: Digest of the password setup token
            invitation_expires_at: When the setup token stops working

        Returns:
            Created User instance
        """
        user = User(
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            school_id=school_id,
            phone=phone,
            teacher_id=teacher_id,
            student_id=student_id,
            is_active=is_active,
            mfa_enabled=mfa_enabled,
            invitation_token_hash=invitation_token_hash,
            invitation_expires_at=invitation_expires_at,
        )

        db.add(user)
        await db.flush()
        await db.refresh(user)

        logger.info(f"Created user: {user.id} - {user.email}")
        return user

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: str | UUID) -> User | None:
        """
        Get a user by ID.

        Args:
            db: Database session
            user_id: User UUID

        Returns:
            User instance or None if not found
        """
        user_id_str = str(user_id)
        result = await db.execute(select(User).where(User.id == user_id_str))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        """
        Get a user by email address (case-insensitive).

        Args:
            db: Database session
            email: Email address

        Returns:
            User instance or None if not found
        """
        result = await db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    @staticmethod
    async def email_exists(db: AsyncSession, email: str) -> bool:
        """
        Check if an email address is already registered.

        Args:
            db: Database session
            email: Email address to check

        Returns:
            True if email exists, False otherwise
        """
        result = await db.execute(select(exists().where(User.email == normalize_email(email))))
        return bool(result.scalar())

    @staticmethod
    async def get_by_invitation_token_hash(db: AsyncSession, token_hash: str) -> User | None:
        result = await db.execute(select(User).where(User.invitation_token_hash == token_hash))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_roles(db: AsyncSession, user_id: str) -> list[RoleAssignment]:
        """Get every role assignment held by a user."""
        result = await db.execute(select(RoleAssignment).where(RoleAssignment.user_id == str(user_id)))
        return list(result.scalars().all())

    @staticmethod
    async def add_role(
        db: AsyncSession,
        *,
        user_id: str,
        role: UserRole,
        school_id: str | None = None,
        granted_by: str | None = None,
    ) -> RoleAssignment:
        """Grant a role to a user."""
        assignment = RoleAssignment(
            user_id=str(user_id),
            role=role,
            school_id=school_id,
            granted_by=granted_by,
        )
        db.add(assignment)
        await db.flush()

        logger.info(f"Granted role {role.value} to user {user_id} (school: {school_id})")
        return assignment

    @staticmethod
    async def update_password(
        db: AsyncSession,
        user_id: str,
        password_hash: str,
        *,
        activate: bool = False,
    ) -> None:
        """
        Replace a user's password hash.

        Any outstanding invitation is consumed. With activate=True the
        account is (re)activated as well.
        """
        values: dict = {
            "password_hash": password_hash,
            "invitation_token_hash": None,
            "invitation_expires_at": None,
        }
        if activate:
            values["is_active"] = True

        await db.execute(update(User).where(User.id == str(user_id)).values(**values))
        await db.flush()

    @staticmethod
    async def set_invitation_token(
        db: AsyncSession,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        """
        Issue a password setup link, replacing any earlier one.

        Used for password reset requests; the current password keeps
        working until the link is used.
        """
        await db.execute(
            update(User)
            .where(User.id == str(user_id))
            .values(invitation_token_hash=token_hash, invitation_expires_at=expires_at)
        )
        await db.flush()

    @staticmethod
    async def set_mfa_enabled(db: AsyncSession, user_id: str, enabled: bool) -> None:
        await db.execute(update(User).where(User.id == str(user_id)).values(mfa_enabled=enabled))
        await db.flush()

    @staticmethod
    async def record_login(db: AsyncSession, user_id: str, logged_in_at: datetime) -> None:
        """Stamp the time of the last completed sign-in."""
        await db.execute(update(User).where(User.id == str(user_id)).values(last_login_at=logged_in_at))
        await db.flush()
