"""
User Administration Service Layer

Account management performed by administrators, and the emailed
links users follow to set their own password:

1. Create account:
   - Global admins create any account; school admins only within their
     school and never a global admin
   - Field problems (email, names, school, password) reported together
   - Password supplied, generated (returned once) or chosen by the user
     through an emailed invitation link

2. Reset password:
   - New generated password returned once
   - Every session of the user is revoked and the account reactivated

3. Password setup links:
   - Invitation (72 h) from account creation, or self-service reset
     request (2 h, throttled, same answer for unknown accounts)
   - Link checked before the form is shown, then used once to set the
     password, which also signs the user out everywhere
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.email import send_account_invitation, send_password_reset
from app.core.rate_limit import check_rate_limit
from app.core.security import (
    generate_password,
    generate_token,
    hash_password,
    hash_token,
    normalize_email,
    validate_email_address,
    validate_password_strength,
)
from app.modules.auth import repository as session_repository
from app.modules.auth.schemas import SuccessResponse, UserResponse
from app.modules.auth.service import (
    AuthContext,
    DuplicateEmailError,
    InvitationExpiredError,
    InvitationInvalidError,
    PasswordResetRateLimitedError,
    PermissionDeniedError,
    ServiceUnavailableError,
    UserNotFoundError,
    ValidationFailedError,
)
from app.modules.schools.repository import SchoolRepository
from app.modules.users.models import User, UserRole
from app.modules.users.permissions import (
    ADMIN_ROLES,
    SCHOOL_BOUND_ROLES,
    can_manage_school,
    grantable_roles,
    has_role,
)
from app.modules.users.repository import UserRepository
from app.modules.users.schemas import (
    CreateAccountRequest,
    CreateAccountResponse,
    InvitationValidationResponse,
    ResetPasswordResponse,
)

logger = logging.getLogger(__name__)


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


async def _replace_password(
    db: AsyncSession,
    user_id: str,
    password_hash: str,
    *,
    activate: bool = False,
) -> None:
    """
    Set a new password and sign the user out everywhere in one transaction.

    Raises:
        ServiceUnavailableError: Nothing was changed; the old password still works
    """
    try:
        await session_repository.delete_for_user(db, user_id, commit=False)
        await UserRepository.update_password(db, user_id, password_hash, activate=activate)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Password of user {user_id} not replaced: {e}")
        raise ServiceUnavailableError() from e


def _require_admin(requester: AuthContext) -> None:
    if not requester.has_role(*ADMIN_ROLES):
        logger.warning(f"User {requester.user.id} attempted an administrative action")
        raise PermissionDeniedError()


async def create_account(
    db: AsyncSession,
    requester: AuthContext,
    data: CreateAccountRequest,
) -> CreateAccountResponse:
    """
    Create a user and grant them a role.

    Raises:
        PermissionDeniedError: Requester may not create this account
        ValidationFailedError: One or more fields are invalid
        DuplicateEmailError: Email already registered
    """
    _require_admin(requester)

    is_global_admin = requester.has_role(UserRole.GLOBAL_ADMIN)
    school_id = data.school_id
    if school_id is None and not is_global_admin and data.role in SCHOOL_BOUND_ROLES:
        school_id = requester.primary_school_id

    # Field validation, all problems at once
    errors: dict[str, list[str]] = {}

    email_error = validate_email_address(data.email)
    if email_error:
        errors["email"] = [email_error]
    if not data.first_name.strip():
        errors["first_name"] = ["First name is required."]
    if not data.last_name.strip():
        errors["last_name"] = ["Last name is required."]

    if data.role in SCHOOL_BOUND_ROLES and not school_id:
        errors["school_id"] = [f"A school is required for the {data.role.value} role."]
    elif school_id and not _is_uuid(school_id):
        errors["school_id"] = ["Invalid school id."]

    for field in ("teacher_id", "student_id"):
        value = getattr(data, field)
        if value is not None and not _is_uuid(value):
            errors[field] = [f"Invalid {field.replace('_', ' ')}."]

    if data.password is not None and not data.send_invitation:
        problems = validate_password_strength(data.password)
        if problems:
            errors["password"] = problems

    if errors:
        raise ValidationFailedError(errors)

    # Authority over the role and school
    if data.role not in grantable_roles(requester.roles):
        logger.warning(f"User {requester.user.id} may not grant role {data.role.value}")
        raise PermissionDeniedError(f"You cannot create {data.role.value} accounts.")

    if school_id and not can_manage_school(requester.roles, school_id, requester.user.school_id):
        logger.warning(f"User {requester.user.id} may not manage school {school_id}")
        raise PermissionDeniedError("You can only create accounts for your own school.")

    if school_id and await SchoolRepository.get_by_id(db, school_id) is None:
        raise ValidationFailedError({"school_id": ["School not found."]})

    email = normalize_email(data.email)
    if await UserRepository.email_exists(db, email):
        raise DuplicateEmailError()

    generated_password = None
    invitation_token = None
    invitation_expires_at = None
    password_hash = None

    if data.send_invitation:
        invitation_token = generate_token()
        invitation_expires_at = datetime.now(UTC) + timedelta(hours=settings.invitation_ttl_hours)
    elif data.password is not None:
        password_hash = hash_password(data.password)
    else:
        generated_password = generate_password()
        password_hash = hash_password(generated_password)

    try:
        user = await UserRepository.create(
            db,
            email=email,
            password_hash=password_hash,
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            school_id=school_id,
            phone=data.phone,
            teacher_id=data.teacher_id,
            student_id=data.student_id,
            mfa_enabled=data.mfa_enabled,
            invitation_token_hash=hash_token(invitation_token) if invitation_token else None,
            invitation_expires_at=invitation_expires_at,
        )
        await UserRepository.add_role(
            db,
            user_id=user.id,
            role=data.role,
            school_id=school_id,
            granted_by=requester.user.id,
        )
        await db.commit()
    except IntegrityError as e:
        # Lost a race with another request creating the same email
        await db.rollback()
        logger.warning(f"Duplicate email on account creation: {email}")
        raise DuplicateEmailError() from e

    logger.info(f"User {requester.user.id} created account {user.id} ({data.role.value}, school: {school_id})")

    invitation_sent = False
    if invitation_token:
        invitation_sent = await send_account_invitation(
            to_email=user.email,
            first_name=user.first_name,
            token=invitation_token,
            expires_in_hours=settings.invitation_ttl_hours,
        )
        if not invitation_sent:
            logger.error(f"Invitation email for user {user.id} could not be sent")

    return CreateAccountResponse(
        user=UserResponse.model_validate(user),
        role=data.role,
        generated_password=generated_password,
        invitation_token=invitation_token,
        invitation_expires_at=invitation_expires_at,
        invitation_sent=invitation_sent,
    )


async def reset_password(
    db: AsyncSession,
    requester: AuthContext,
    user_id: str,
) -> ResetPasswordResponse:
    """
    Replace a user's password with a generated one.

    The user's sessions are revoked and the account is reactivated.

    Raises:
        PermissionDeniedError: Requester may not manage this user
        UserNotFoundError: Unknown user id
        ServiceUnavailableError: Sessions could not be revoked
    """
    _require_admin(requester)

    target = await UserRepository.get_by_id(db, user_id) if _is_uuid(user_id) else None
    if target is None:
        raise UserNotFoundError()

    if not requester.has_role(UserRole.GLOBAL_ADMIN):
        target_roles = await UserRepository.get_roles(db, target.id)
        if has_role(target_roles, UserRole.GLOBAL_ADMIN) or not can_manage_school(
            requester.roles, target.school_id, requester.user.school_id
        ):
            logger.warning(f"User {requester.user.id} may not reset password of {target.id}")
            raise PermissionDeniedError("You can only reset passwords for users of your school.")

    new_password = generate_password()
    await _replace_password(db, target.id, hash_password(new_password), activate=True)

    logger.info(f"User {requester.user.id} reset the password of {target.id}")
    return ResetPasswordResponse(new_password=new_password)


async def _get_valid_invitation(db: AsyncSession, token: str) -> User:
    user = await UserRepository.get_by_invitation_token_hash(db, hash_token(token.strip()))
    if user is None:
        raise InvitationInvalidError()

    if user.invitation_expires_at is None or user.invitation_expires_at <= datetime.now(UTC):
        raise InvitationExpiredError()

    return user


async def validate_invitation(db: AsyncSession, token: str) -> InvitationValidationResponse:
    """
    Check a password setup link before showing the password form.

    Raises:
        InvitationInvalidError: Unknown or already used token
        InvitationExpiredError: Token expired
    """
    user = await _get_valid_invitation(db, token)

    return InvitationValidationResponse(
        mode="reset" if user.password_hash else "activation",
        email=user.email,
        first_name=user.first_name,
        expires_at=user.invitation_expires_at,
    )


async def accept_invitation(db: AsyncSession, token: str, password: str) -> SuccessResponse:
    """
    Set the password of an invited user, or complete a password reset.

    Existing sessions are revoked.

    Raises:
        InvitationInvalidError: Unknown or already used token
        InvitationExpiredError: Token expired
        ValidationFailedError: Password does not meet the policy
        ServiceUnavailableError: Password could not be stored
    """
    user = await _get_valid_invitation(db, token)

    problems = validate_password_strength(password)
    if problems:
        raise ValidationFailedError({"password": problems})

    await _replace_password(db, user.id, hash_password(password))

    logger.info(f"Password set through emailed link by user {user.id}")
    return SuccessResponse(message="Password set. You can now sign in.")


async def request_password_reset(
    db: AsyncSession,
    email: str,
    redis: Redis | None = None,
) -> SuccessResponse:
    """
    Email a password reset link.

    The answer is the same whether or not an active account exists for
    the address. The current password keeps working until the link is used.

    Raises:
        PasswordResetRateLimitedError: Too many requests for this email
    """
    normalized_email = normalize_email(email)
    response = SuccessResponse(message="If an account exists for this email, a reset link has been sent.")

    if validate_email_address(normalized_email):
        return response

    limit = await check_rate_limit(
        f"password-reset:{normalized_email}",
        settings.password_reset_rate_limit_attempts,
        settings.password_reset_rate_limit_window_seconds,
        redis,
    )
    if not limit:
        logger.warning(f"Password reset rate limit exceeded for {normalized_email}")
        raise PasswordResetRateLimitedError(limit.retry_after_seconds)

    user = await UserRepository.get_by_email(db, normalized_email)
    if user is None or not user.is_active:
        logger.info(f"Password reset requested for unknown or inactive account: {normalized_email}")
        return response

    token = generate_token()
    expires_at = datetime.now(UTC) + timedelta(hours=settings.password_reset_ttl_hours)
    await UserRepository.set_invitation_token(db, user.id, hash_token(token), expires_at)
    await db.commit()

    school = await SchoolRepository.get_by_id(db, user.school_id) if user.school_id else None
    sent = await send_password_reset(
        to_email=user.email,
        first_name=user.first_name,
        token=token,
        expires_in_hours=settings.password_reset_ttl_hours,
        school_name=school.name if school else None,
    )
    if not sent:
        logger.error(f"Password reset email for user {user.id} could not be sent")
    else:
        logger.info(f"Password reset link sent to user {user.id}")

    return response
