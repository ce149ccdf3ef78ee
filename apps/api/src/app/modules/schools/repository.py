"""
School Repository

Read access to school tenants.
"""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.schools.models import School

logger = logging.getLogger(__name__)


class SchoolRepository:
    """Repository for school database operations."""

    @staticmethod
    async def get_by_id(db: AsyncSession, school_id: str | UUID) -> School | None:
        """
        Get a school by ID.

        Args:
            db: Database session
            school_id: School UUID

        Returns:
            School instance or None if not found
        """
        result = await db.execute(select(School).where(School.id == str(school_id)))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_identifier(db: AsyncSession, school_id: str | UUID | None) -> str | None:
        """
        Get the routing identifier of a school.

        Args:
            db: Database session
            school_id: School UUID (None returns None)

        Returns:
            The school's identifier, or None if there is no such school
        """
        if not school_id:
            return None

        result = await db.execute(select(School.identifier).where(School.id == str(school_id)))
        return result.scalar_one_or_none()
