"""
User Administration Router

Endpoints:
- POST /users - Create an account (global or school admin)
- POST /users/{user_id}/reset-password - Generate a new password (admin)
- POST /users/request-password-reset - Email a reset link (public, throttled)
- POST /users/validate-invitation - Check an emailed link before the form (public)
- POST /users/accept-invitation - Set a password with an emailed link (public)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.redis import get_redis
from app.modules.auth.dependencies import get_auth_service, internal_error, service_error_to_http
from app.modules.auth.schemas import SuccessResponse
from app.modules.auth.service import AuthService, AuthServiceError
from app.modules.users import service
from app.modules.users.permissions import ADMIN_ROLES
from app.modules.users.schemas import (
    AcceptInvitationRequest,
    CreateAccountRequest,
    CreateAccountResponse,
    InvitationValidationResponse,
    RequestPasswordResetRequest,
    ResetPasswordRequest,
    ResetPasswordResponse,
    ValidateInvitationRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=CreateAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_account(
    data: CreateAccountRequest,
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> CreateAccountResponse:
    """
    Create a user account.

    Raises:
        HTTPException 401: Invalid session
        HTTPException 403: Not allowed to create this account
        HTTPException 409: Email already registered
        HTTPException 422: Field validation failed (see detail.fields)
    """
    try:
        requester = await auth.require_session(data.session_token, roles=ADMIN_ROLES)
        return await service.create_account(db, requester, data)
    except AuthServiceError as e:
        logger.warning(f"Account creation rejected: {e.error_code}")
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error creating account: {e}")
        raise internal_error() from e


@router.post("/{user_id}/reset-password", response_model=ResetPasswordResponse)
async def reset_password(
    user_id: str,
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> ResetPasswordResponse:
    """
    Reset a user's password to a generated one and sign them out everywhere.

    Raises:
        HTTPException 401: Invalid session
        HTTPException 403: User is outside the requester's school
        HTTPException 404: Unknown user
    """
    try:
        requester = await auth.require_session(data.session_token, roles=ADMIN_ROLES)
        return await service.reset_password(db, requester, user_id)
    except AuthServiceError as e:
        logger.warning(f"Password reset rejected: {e.error_code}")
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error resetting password: {e}")
        raise internal_error() from e


@router.post("/accept-invitation", response_model=SuccessResponse)
async def accept_invitation(
    data: AcceptInvitationRequest,
    db: AsyncSession = Depends(get_db),
) -> SuccessResponse:
    """
    Choose a password using the emailed invitation token.

    Raises:
        HTTPException 400: Invalid, used or expired invitation
        HTTPException 422: Password does not meet the policy
    """
    try:
        return await service.accept_invitation(db, data.token, data.password)
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error accepting invitation: {e}")
        raise internal_error() from e


@router.post("/request-password-reset", response_model=SuccessResponse)
async def request_password_reset(
    data: RequestPasswordResetRequest,
    db: AsyncSession = Depends(get_db),
    redis: Redis | None = Depends(get_redis),
) -> SuccessResponse:
    """
    Email a password reset link. The response does not reveal whether
    the account exists.

    Raises:
        HTTPException 429: Too many requests for this email
    """
    try:
        return await service.request_password_reset(db, data.email, redis)
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error requesting password reset: {e}")
        raise internal_error() from e


@router.post("/validate-invitation", response_model=InvitationValidationResponse)
async def validate_invitation(
    data: ValidateInvitationRequest,
    db: AsyncSession = Depends(get_db),
) -> InvitationValidationResponse:
    """
    Check an emailed password setup link.

    Raises:
        HTTPException 400: Invalid, used or expired link
    """
    try:
        return await service.validate_invitation(db, data.token)
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error validating invitation: {e}")
        raise internal_error() from e
