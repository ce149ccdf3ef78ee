"""
School Models

Each school is a tenant in the multi-tenant architecture. The auth core
only needs a school's routing identifier (the slug used in portal URLs).
"""

from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, String
from sqlalchemy.dialects.postgresql import ENUM
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.modules.shared import BaseModel

if TYPE_CHECKING:
    from app.modules.users.models import User


class SchoolStatus(str, Enum):
    """Status of a school tenant."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class School(BaseModel):
    """
    School tenant model.

    Users, role assignments and all school-scoped data reference this
    model via school_id.
    """

    __tablename__ = "schools"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    # Routing identifier, e.g. "lycee-moderne-abidjan" in /schools/<identifier>
    identifier: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )

    status: Mapped[SchoolStatus] = mapped_column(
        ENUM(SchoolStatus, name="school_status", create_type=True),
        nullable=False,
        default=SchoolStatus.ACTIVE,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    users: Mapped[list["User"]] = relationship(
        "User",
        back_populates="school",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<School(id={self.id}, identifier={self.identifier}, status={self.status.value})>"
