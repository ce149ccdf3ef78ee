"""
User Administration Schemas
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.modules.auth.schemas import UserResponse
from app.modules.users.models import UserRole


class CreateAccountRequest(BaseModel):
    """
    Create a user account on behalf of a school.

    Exactly one way of setting the password applies: `send_invitation`
    emails a setup link, otherwise `password` is used, otherwise one is
    generated and returned once. Email and password are validated by
    the service so every field problem is reported together.
    """

    session_token: str = Field(..., min_length=1)

    email: str = Field(..., max_length=255)
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    phone: str | None = Field(None, max_length=20)

    role: UserRole
    school_id: str | None = None
    teacher_id: str | None = None
    student_id: str | None = None

    password: str | None = Field(None, max_length=1024)
    send_invitation: bool = False
    mfa_enabled: bool = False


class CreateAccountResponse(BaseModel):
    user: UserResponse
    role: UserRole
    generated_password: str | None = None
    invitation_token: str | None = None
    invitation_expires_at: datetime | None = None
    invitation_sent: bool = False


class ResetPasswordRequest(BaseModel):
    session_token: str = Field(..., min_length=1)


class ResetPasswordResponse(BaseModel):
    success: bool = True
    new_password: str
    message: str = "Password reset. The user's sessions were signed out."


class RequestPasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=255)


class ValidateInvitationRequest(BaseModel):
    token: str = Field(..., min_length=1)


class InvitationValidationResponse(BaseModel):
    """
    What a password setup link is for.

    mode is "activation" for an account that never had a password and
    "reset" for a password reset request.
    """

    valid: bool = True
    mode: Literal["activation", "reset"]
    email: str
    first_name: str
    expires_at: datetime


class AcceptInvitationRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, max_length=1024)
