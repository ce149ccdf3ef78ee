"""
FastAPI dependencies and error translation shared by the auth and
user administration routers.
"""

from fastapi import Depends, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.redis import get_redis
from app.modules.auth.service import (
    AuthService,
    AuthServiceError,
    IncorrectCodeError,
    RateLimitedError,
    ResendCooldownError,
    ValidationFailedError,
)


async def get_auth_service(
    db: AsyncSession = Depends(get_db),
    redis: Redis | None = Depends(get_redis),
) -> AuthService:
    return AuthService(db, redis)


def get_client_ip(request: Request) -> str | None:
    """
    Best-effort client address for login notifications.

    Prefers the first X-Forwarded-For hop, then X-Real-IP, then the
    socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else None


def service_error_to_http(e: AuthServiceError) -> HTTPException:
    """Translate a service error into the API error envelope."""
    detail: dict = {
        "error": e.error_code,
        "message": e.message,
    }
    headers = None

    if isinstance(e, (RateLimitedError, ResendCooldownError)):
        detail["retry_after_seconds"] = e.retry_after_seconds
        headers = {"Retry-After": str(e.retry_after_seconds)}
    elif isinstance(e, IncorrectCodeError):
        detail["remaining_attempts"] = e.remaining_attempts
    elif isinstance(e, ValidationFailedError):
        detail["fields"] = e.field_errors

    return HTTPException(status_code=e.status_code, detail=detail, headers=headers)


def internal_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )
