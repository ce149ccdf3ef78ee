"""
Authentication Router

Endpoints:
- POST /auth/login - Email + password; final session or MFA challenge
- POST /auth/verify-code - Complete an MFA challenge
- POST /auth/resend-code - Email a new code for a pending challenge
- POST /auth/validate-session - Resolve a session token (sliding refresh)
- POST /auth/logout - Revoke a session
- POST /auth/change-password - Change the signed-in user's password
- POST /auth/mfa - Enable or disable email MFA

Security:
- Tokens are carried in request bodies, never in URLs
- Login is throttled per email (429 with Retry-After)
- Error bodies are generic; they never reveal whether an email exists
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from app.modules.auth.dependencies import (
    get_auth_service,
    get_client_ip,
    internal_error,
    service_error_to_http,
)
from app.modules.auth.schemas import (
    AuthenticatedResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    ResendCodeRequest,
    ResendCodeResponse,
    SessionValidationResponse,
    SuccessResponse,
    ToggleMfaRequest,
    ToggleMfaResponse,
    ValidateSessionRequest,
    VerifyCodeRequest,
)
from app.modules.auth.service import AuthService, AuthServiceError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=LoginResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """
    Authenticate with email and password.

    Returns either the final session (MFA disabled) or
    `{mfa_required: true, user_id, pending_session_token}`.

    Raises:
        HTTPException 401: Invalid credentials
        HTTPException 429: Too many attempts for this email
    """
    try:
        return await auth.login(credentials.email, credentials.password, get_client_ip(request))
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error during login: {e}")
        raise internal_error() from e


@router.post("/verify-code", response_model=AuthenticatedResponse)
async def verify_code(
    data: VerifyCodeRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> AuthenticatedResponse:
    """
    Exchange a pending token and emailed code for a final session.

    The pending token stops working once this succeeds.

    Raises:
        HTTPException 400: No pending code
        HTTPException 401: Wrong, expired or exhausted code; invalid token
        HTTPException 404: Unknown user
    """
    try:
        return await auth.verify_code(
            data.user_id,
            data.code,
            data.pending_session_token,
            get_client_ip(request),
        )
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error verifying code: {e}")
        raise internal_error() from e


@router.post("/resend-code", response_model=ResendCodeResponse)
async def resend_code(
    data: ResendCodeRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ResendCodeResponse:
    """
    Email a new verification code. The previous code is invalidated.

    Raises:
        HTTPException 400: MFA not enabled
        HTTPException 401: Invalid pending token
        HTTPException 404: Unknown user
        HTTPException 429: Requested again too soon
    """
    try:
        return await auth.resend_code(data.user_id, data.pending_session_token)
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error resending code: {e}")
        raise internal_error() from e


@router.post("/validate-session", response_model=SessionValidationResponse)
async def validate_session(
    data: ValidateSessionRequest,
    auth: AuthService = Depends(get_auth_service),
) -> SessionValidationResponse:
    """
    Check a session token.

    Always answers 200; invalid tokens yield `{valid: false}`. When the
    session is close to expiry a new token is returned and must replace
    the old one.
    """
    return await auth.validate_session(data.session_token)


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    data: LogoutRequest,
    auth: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """Revoke the session. Succeeds for unknown or missing tokens."""
    try:
        return await auth.logout(data.session_token)
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error during logout: {e}")
        raise internal_error() from e


@router.post("/change-password", response_model=SuccessResponse)
async def change_password(
    data: ChangePasswordRequest,
    auth: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """
    Change the signed-in user's password.

    Raises:
        HTTPException 401: Invalid session or wrong current password
        HTTPException 422: New password does not meet the policy
    """
    try:
        return await auth.change_password(
            data.session_token,
            data.current_password,
            data.new_password,
        )
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error changing password: {e}")
        raise internal_error() from e


@router.post("/mfa", response_model=ToggleMfaResponse)
async def toggle_mfa(
    data: ToggleMfaRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ToggleMfaResponse:
    """Enable or disable email verification codes at sign-in."""
    try:
        return await auth.set_mfa_enabled(data.session_token, data.enabled)
    except AuthServiceError as e:
        raise service_error_to_http(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error toggling MFA: {e}")
        raise internal_error() from e
