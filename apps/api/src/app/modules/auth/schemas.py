"""
Authentication Schemas

Request and response bodies for sign-in, MFA and session endpoints.
Session tokens travel in the JSON body, never in URLs.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.modules.users.models import UserRole


class UserResponse(BaseModel):
    """Public view of a user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: str
    last_name: str
    phone: str | None = None
    school_id: str | None = None
    teacher_id: str | None = None
    student_id: str | None = None
    is_active: bool
    mfa_enabled: bool


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    role: UserRole
    school_id: str | None = None


class AuthenticatedUser(BaseModel):
    """A signed-in user with the roles resolved for routing."""

    user: UserResponse
    roles: list[RoleResponse]
    primary_role: UserRole
    primary_school_id: str | None = None
    primary_school_identifier: str | None = None


# ============== Login ==============


class LoginRequest(BaseModel):
    """
    Login request.

    The email is not syntax-checked here; a malformed address simply
    fails authentication like any unknown one.
    """

    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)


class MfaChallengeResponse(BaseModel):
    """Password accepted, a code was emailed."""

    mfa_required: Literal[True] = True
    user_id: str
    pending_session_token: str
    code_expires_at: datetime
    message: str = "A verification code has been sent to your email."


class AuthenticatedResponse(AuthenticatedUser):
    """Sign-in complete."""

    mfa_required: Literal[False] = False
    session_token: str
    session_expires_at: datetime


LoginResponse = MfaChallengeResponse | AuthenticatedResponse


# ============== MFA ==============


class VerifyCodeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, max_length=32)
    pending_session_token: str = Field(..., min_length=1)


class ResendCodeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    pending_session_token: str = Field(..., min_length=1)


class ResendCodeResponse(BaseModel):
    success: bool = True
    message: str = "A new verification code has been sent to your email."
    code_expires_at: datetime
    resend_available_at: datetime


# ============== Sessions ==============


class ValidateSessionRequest(BaseModel):
    session_token: str = ""


class SessionValidationResponse(BaseModel):
    """
    Result of validating a session token.

    When the session was refreshed, session_token carries the new token
    and the old one no longer works.
    """

    valid: bool
    user: UserResponse | None = None
    roles: list[RoleResponse] = Field(default_factory=list)
    primary_role: UserRole | None = None
    primary_school_id: str | None = None
    primary_school_identifier: str | None = None
    session_token: str | None = None
    session_expires_at: datetime | None = None
    refreshed: bool = False


class LogoutRequest(BaseModel):
    session_token: str | None = None


class SuccessResponse(BaseModel):
    success: bool = True
    message: str | None = None


# ============== Account settings ==============


class ChangePasswordRequest(BaseModel):
    session_token: str = Field(..., min_length=1)
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class ToggleMfaRequest(BaseModel):
    session_token: str = Field(..., min_length=1)
    enabled: bool


class ToggleMfaResponse(BaseModel):
    success: bool = True
    mfa_enabled: bool
