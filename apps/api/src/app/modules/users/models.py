"""
User Models

Identity, credentials and role assignments.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import ENUM, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.modules.shared import BaseModel

if TYPE_CHECKING:
    from app.modules.schools.models import School


class UserRole(str, Enum):
    """
    User roles in the system.

    Declared in descending order of privilege; the first role a user holds
    in this order is their primary role.
    """

    GLOBAL_ADMIN = "global_admin"
    SCHOOL_ADMIN = "school_admin"
    SCHOOL_STAFF = "school_staff"
    TEACHER = "teacher"
    STUDENT = "student"


class User(BaseModel):
    """
    User model for authentication and authorization.

    Multi-tenant: school_id links the user to their school (NULL for
    global admins). teacher_id/student_id link to the portal records
    managed by the school modules.

    Users are never hard-deleted by the auth core; deactivate them
    with is_active instead.
    """

    __tablename__ = "users"

    school_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("schools.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    teacher_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), nullable=True)
    student_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), nullable=True)

    # Authentication fields (email stored lowercase)
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    # NULL until an invited user chooses a password
    password_hash: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Profile fields
    first_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    last_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    phone: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )

    # Account status
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Email-based multi-factor authentication
    mfa_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Self-service password setup (SHA-256 of the emailed token)
    invitation_token_hash: Mapped[str | None] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
    )
    invitation_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    school: Mapped["School | None"] = relationship(
        "School",
        back_populates="users",
        lazy="selectin",
    )
    roles: Mapped[list["RoleAssignment"]] = relationship(
        "RoleAssignment",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
        foreign_keys="RoleAssignment.user_id",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"

    @property
    def full_name(self) -> str:
        """Return user's full name."""
        return f"{self.first_name} {self.last_name}"


class RoleAssignment(BaseModel):
    """
    A role held by a user, optionally scoped to a school.

    A user may hold several assignments (e.g. teacher in two schools).
    """

    __tablename__ = "user_roles"

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[UserRole] = mapped_column(
        ENUM(UserRole, name="user_role", create_type=True),
        nullable=False,
    )
    school_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=True,
    )
    granted_by: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    user: Mapped["User"] = relationship(
        "User",
        back_populates="roles",
        foreign_keys=[user_id],
    )

    __table_args__ = (UniqueConstraint("user_id", "role", "school_id", name="uq_user_roles"),)

    def __repr__(self) -> str:
        return f"<RoleAssignment(user_id={self.user_id}, role={self.role.value}, school_id={self.school_id})>"
