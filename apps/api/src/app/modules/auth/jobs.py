"""
Authentication Background Jobs

- purge_expired_sessions: delete sessions and pending challenges whose
  lifetime has ended

Jobs open their own database session and are safe to run repeatedly.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.database import async_session_maker
from app.core.scheduler import register_job
from app.modules.auth import repository

logger = logging.getLogger(__name__)

PURGE_EXPIRED_SESSIONS_JOB_ID = "purge_expired_sessions"


async def purge_expired_sessions() -> dict[str, Any]:
    """
    Delete expired sessions and challenges.

    validate-session already removes expired rows it encounters; this
    job covers tokens that are never presented again.
    """
    now = datetime.now(UTC)
    async with async_session_maker() as db:
        deleted = await repository.delete_expired(db, now)

    if deleted:
        logger.info(f"Purged {deleted} expired session(s)")
    else:
        logger.debug("No expired sessions to purge")

    return {"deleted": deleted}


def register_auth_jobs() -> None:
    """Register authentication background jobs with the scheduler."""
    register_job(
        PURGE_EXPIRED_SESSIONS_JOB_ID,
        purge_expired_sessions,
        IntervalTrigger(minutes=settings.session_purge_interval_minutes),
    )
    logger.info("Authentication background jobs registered")
