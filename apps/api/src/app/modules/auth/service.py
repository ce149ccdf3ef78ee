"""
Authentication Service Layer

Business logic for signing users in and keeping them signed in.

This module implements:
1. Login:
   - Per-email throttling (Redis sliding window, in-memory fallback)
   - Password verification with transparent migration of legacy hashes
   - Either a final session, or a pending MFA challenge with an emailed code

2. MFA verification:
   - Code checked against the pending challenge of the user
   - Limited attempts, expiry, resend with a server-side cooldown
   - Success promotes the challenge to a final session under a new token

3. Session validation:
   - Opaque tokens resolved server-side; expired rows are removed
   - Sliding refresh rotates the token when less than a day remains
   - Roles resolved to a primary role and school for routing

4. Account settings:
   - Logout (server-side revocation), change password, toggle MFA

Security considerations:
- Tokens and codes are stored as SHA-256 digests and compared in constant time
- Unknown emails cost the same bcrypt work as wrong passwords
- Unknown email, wrong password and inactive account share one error
- Login, verify and resend never surface infrastructure details
- Every state change on a challenge or session is a conditional update,
  so concurrent requests cannot both consume the same code or token
- Passwords, tokens and codes are never logged
"""

import asyncio
import logging
import math
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.email import send_login_notification, send_mfa_code
from app.core.rate_limit import check_rate_limit, reset_rate_limit
from app.core.security import (
    burn_password_check,
    digests_match,
    generate_mfa_code,
    generate_token,
    hash_password,
    hash_token,
    normalize_email,
    password_needs_rehash,
    validate_password_strength,
    verify_password,
)
from app.modules.auth import repository
from app.modules.auth.models import AuthSession, SessionKind
from app.modules.auth.schemas import (
    AuthenticatedResponse,
    AuthenticatedUser,
    LoginResponse,
    MfaChallengeResponse,
    ResendCodeResponse,
    RoleResponse,
    SessionValidationResponse,
    SuccessResponse,
    ToggleMfaResponse,
    UserResponse,
)
from app.modules.schools.repository import SchoolRepository
from app.modules.users.models import RoleAssignment, User, UserRole
from app.modules.users.permissions import has_role, select_primary_role
from app.modules.users.repository import UserRepository

logger = logging.getLogger(__name__)

# Login notifications in flight; held so they are not garbage collected
_background_tasks: set[asyncio.Task] = set()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _session_ttl() -> timedelta:
    return timedelta(days=settings.session_ttl_days)


def _code_ttl() -> timedelta:
    return timedelta(minutes=settings.mfa_code_ttl_minutes)


def _challenge_expiry(code_expires_at: datetime) -> datetime:
    """A pending challenge outlives its code so late attempts get CODE_EXPIRED."""
    return code_expires_at + timedelta(minutes=settings.mfa_challenge_grace_minutes)


# ============== Errors ==============


class AuthServiceError(Exception):
    """Base exception for authentication service errors."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class InvalidCredentialsError(AuthServiceError):
    """Unknown email, wrong password or inactive account."""

    def __init__(self, message: str = "Invalid email or password."):
        super().__init__(
            message=message,
            error_code="INVALID_CREDENTIALS",
            status_code=401,
        )


class AuthenticationFailedError(AuthServiceError):
    """Raised instead of infrastructure errors during sign-in."""

    def __init__(self):
        super().__init__(
            message="Authentication failed. Please try again.",
            error_code="AUTHENTICATION_FAILED",
            status_code=401,
        )


class RateLimitedError(AuthServiceError):
    """Raised when a throttled operation was attempted too often."""

    def __init__(self, retry_after_seconds: int, message: str = "Too many requests. Please try again later."):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message=message,
            error_code="RATE_LIMITED",
            status_code=429,
        )


class LoginRateLimitedError(RateLimitedError):
    """Raised when too many login attempts were made for an email."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(retry_after_seconds, "Too many login attempts. Please try again later.")


class PasswordResetRateLimitedError(RateLimitedError):
    def __init__(self, retry_after_seconds: int):
        super().__init__(retry_after_seconds, "Too many password reset requests. Please try again later.")


class UserNotFoundError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="User not found.",
            error_code="USER_NOT_FOUND",
            status_code=404,
        )


class InvalidSessionError(AuthServiceError):
    """The token does not identify a live session or challenge."""

    def __init__(self, message: str = "Invalid or expired session. Please sign in again."):
        super().__init__(
            message=message,
            error_code="INVALID_SESSION",
            status_code=401,
        )


class NoPendingCodeError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="No verification code is pending.",
            error_code="NO_PENDING_CODE",
            status_code=400,
        )


class CodeExpiredError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="The verification code has expired. Please sign in again.",
            error_code="CODE_EXPIRED",
            status_code=401,
        )


class IncorrectCodeError(AuthServiceError):
    def __init__(self, remaining_attempts: int):
        self.remaining_attempts = remaining_attempts
        super().__init__(
            message="Incorrect verification code.",
            error_code="INCORRECT_CODE",
            status_code=401,
        )


class TooManyAttemptsError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="Too many incorrect codes. Please sign in again.",
            error_code="TOO_MANY_ATTEMPTS",
            status_code=401,
        )


class MfaNotEnabledError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="Two-factor authentication is not enabled for this account.",
            error_code="MFA_NOT_ENABLED",
            status_code=400,
        )


class ResendCooldownError(AuthServiceError):
    """Raised when a new code is requested too soon after the previous one."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message=f"Please wait {retry_after_seconds} seconds before requesting a new code.",
            error_code="RESEND_COOLDOWN",
            status_code=429,
        )


class PermissionDeniedError(AuthServiceError):
    def __init__(self, message: str = "You do not have permission to perform this action."):
        super().__init__(
            message=message,
            error_code="PERMISSION_DENIED",
            status_code=403,
        )


class DuplicateEmailError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="An account with this email already exists.",
            error_code="DUPLICATE_EMAIL",
            status_code=409,
        )


class ValidationFailedError(AuthServiceError):
    """Field-level validation failures, reported together."""

    def __init__(self, field_errors: dict[str, list[str]]):
        self.field_errors = field_errors
        super().__init__(
            message="Validation failed.",
            error_code="VALIDATION_FAILED",
            status_code=422,
        )


class InvitationInvalidError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="Invalid or already used invitation link.",
            error_code="INVITATION_INVALID",
            status_code=400,
        )


class InvitationExpiredError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="This invitation link has expired. Ask your administrator for a new one.",
            error_code="INVITATION_EXPIRED",
            status_code=400,
        )


class ServiceUnavailableError(AuthServiceError):
    def __init__(self):
        super().__init__(
            message="Service temporarily unavailable. Please try again later.",
            error_code="SERVICE_UNAVAILABLE",
            status_code=503,
        )


# ============== Helpers ==============


@dataclass
class AuthContext:
    """A validated session and the user behind it."""

    user: User
    session: AuthSession
    roles: list[RoleAssignment]
    primary_role: UserRole
    primary_school_id: str | None
    session_token: str
    session_expires_at: datetime
    refreshed: bool = False

    def has_role(self, *roles: UserRole) -> bool:
        return has_role(self.roles, *roles)


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def _log_background_failure(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)


def _run_in_background(coro: Coroutine[Any, Any, Any], name: str) -> None:
    """Schedule a coroutine without awaiting it; failures are only logged."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_log_background_failure)


# ============== Service ==============


class AuthService:
    """
    Sign-in, MFA and session management.

    One instance per request; holds the request's database session and
    the optional Redis client used for login throttling.
    """

    def __init__(self, db: AsyncSession, redis: Redis | None = None):
        self.db = db
        self.redis = redis

    # ---------- Login ----------

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
    ) -> LoginResponse:
        """
        Authenticate with email and password.

        Returns a final session when the account has MFA disabled, or a
        pending challenge (and emails a code) when it is enabled.

        Raises:
            LoginRateLimitedError: Too many attempts for this email
            InvalidCredentialsError: Unknown email, wrong password, inactive
                account, or any unexpected failure while checking
            AuthenticationFailedError: The verification code could not be sent
        """
        normalized_email = normalize_email(email)
        rate_limit_key = f"login:{normalized_email}"

        try:
            limit = await check_rate_limit(
                rate_limit_key,
                settings.login_rate_limit_attempts,
                settings.login_rate_limit_window_seconds,
                self.redis,
            )
            if not limit:
                logger.warning(f"Login rate limit exceeded for {normalized_email}")
                raise LoginRateLimitedError(limit.retry_after_seconds)

            user = await UserRepository.get_by_email(self.db, normalized_email)

            if user is None or not user.password_hash:
                burn_password_check(password)
                logger.warning(f"Login attempt for unknown or unclaimed account: {normalized_email}")
                raise InvalidCredentialsError()

            if not verify_password(password, user.password_hash):
                logger.warning(f"Invalid password for user: {user.id}")
                raise InvalidCredentialsError()

            if not user.is_active:
                logger.warning(f"Login attempt for inactive account: {user.id}")
                raise InvalidCredentialsError()

            if password_needs_rehash(user.password_hash):
                await UserRepository.update_password(self.db, user.id, hash_password(password))
                await self.db.commit()
                logger.info(f"Migrated legacy password hash for user {user.id}")

            await reset_rate_limit(rate_limit_key, self.redis)

            if user.mfa_enabled:
                return await self._start_challenge(user)

            session_token = generate_token()
            expires_at = _utcnow() + _session_ttl()
            await repository.create_session(
                self.db,
                user_id=user.id,
                kind=SessionKind.AUTHENTICATED,
                token_hash=hash_token(session_token),
                expires_at=expires_at,
            )
            logger.info(f"User signed in: {user.id}")
            return await self._signed_in(user, session_token, expires_at, ip_address)

        except AuthServiceError:
            raise
        except Exception:
            logger.exception(f"Unexpected error during login for {normalized_email}")
            raise InvalidCredentialsError() from None

    async def _start_challenge(self, user: User) -> MfaChallengeResponse:
        now = _utcnow()
        code = generate_mfa_code()
        pending_token = generate_token()
        code_expires_at = now + _code_ttl()

        await repository.create_session(
            self.db,
            user_id=user.id,
            kind=SessionKind.PENDING_MFA,
            token_hash=hash_token(pending_token),
            expires_at=_challenge_expiry(code_expires_at),
            code_hash=hash_token(code),
            code_expires_at=code_expires_at,
            code_sent_at=now,
        )

        sent = await send_mfa_code(
            to_email=user.email,
            first_name=user.first_name,
            code=code,
            expires_in_minutes=settings.mfa_code_ttl_minutes,
        )
        if not sent:
            await repository.delete_for_user(self.db, user.id)
            logger.error(f"Could not deliver verification code to user {user.id}")
            raise AuthenticationFailedError()

        logger.info(f"MFA challenge issued for user {user.id}")
        return MfaChallengeResponse(
            user_id=user.id,
            pending_session_token=pending_token,
            code_expires_at=code_expires_at,
        )

    # ---------- MFA ----------

    async def _get_challenge(self, user_id: str, pending_session_token: str) -> tuple[User, AuthSession]:
        if not _is_uuid(user_id):
            raise UserNotFoundError()

        user = await UserRepository.get_by_id(self.db, user_id)
        if user is None:
            raise UserNotFoundError()

        auth_session = await repository.get_by_user(self.db, user.id)
        if auth_session is None or not digests_match(
            auth_session.token_hash, hash_token(pending_session_token)
        ):
            raise InvalidSessionError()

        return user, auth_session

    async def verify_code(
        self,
        user_id: str,
        code: str,
        pending_session_token: str,
        ip_address: str | None = None,
    ) -> AuthenticatedResponse:
        """
        Complete an MFA sign-in.

        Raises:
            UserNotFoundError: Unknown user id
            InvalidSessionError: Token does not match the user's challenge
            NoPendingCodeError: Nothing to verify (e.g. already verified)
            CodeExpiredError: Code expired; sign in again
            IncorrectCodeError: Wrong code; retry allowed
            TooManyAttemptsError: Attempt limit reached; sign in again
            AuthenticationFailedError: Unexpected failure
        """
        try:
            user, auth_session = await self._get_challenge(user_id, pending_session_token)

            if auth_session.kind != SessionKind.PENDING_MFA or auth_session.code_expires_at is None:
                raise NoPendingCodeError()

            now = _utcnow()
            if now >= auth_session.code_expires_at:
                if auth_session.code_hash is not None:
                    await repository.clear_code(self.db, auth_session)
                logger.info(f"Expired verification code presented for user {user.id}")
                raise CodeExpiredError()

            if auth_session.code_hash is None:
                raise NoPendingCodeError()

            max_attempts = settings.mfa_max_attempts
            if auth_session.failed_attempts >= max_attempts:
                await repository.delete_session(self.db, auth_session)
                raise TooManyAttemptsError()

            if not digests_match(auth_session.code_hash, hash_token(code.strip())):
                attempts = await repository.record_failed_attempt(self.db, auth_session)
                if attempts is None:
                    raise InvalidSessionError()
                if attempts >= max_attempts:
                    await repository.delete_session(self.db, auth_session)
                    logger.warning(f"MFA attempt limit reached for user {user.id}")
                    raise TooManyAttemptsError()
                logger.warning(f"Incorrect verification code for user {user.id} ({attempts}/{max_attempts})")
                raise IncorrectCodeError(remaining_attempts=max_attempts - attempts)

            if not user.is_active:
                await repository.delete_session(self.db, auth_session)
                raise InvalidSessionError()

            session_token = generate_token()
            expires_at = now + _session_ttl()
            promoted = await repository.transition(
                self.db,
                auth_session,
                SessionKind.AUTHENTICATED,
                token_hash=hash_token(session_token),
                expires_at=expires_at,
                expected_code_hash=auth_session.code_hash,
            )
            if not promoted:
                logger.warning(f"Challenge for user {user.id} changed during verification")
                raise InvalidSessionError()

            logger.info(f"User signed in with MFA: {user.id}")
            return await self._signed_in(user, session_token, expires_at, ip_address)

        except AuthServiceError:
            raise
        except Exception:
            logger.exception(f"Unexpected error verifying code for user {user_id}")
            raise AuthenticationFailedError() from None

    async def resend_code(self, user_id: str, pending_session_token: str) -> ResendCodeResponse:
        """
        Issue a fresh code for a pending challenge.

        The previous code stops working and the attempt counter restarts.

        Raises:
            UserNotFoundError, InvalidSessionError, MfaNotEnabledError,
            ResendCooldownError, AuthenticationFailedError
        """
        try:
            user, auth_session = await self._get_challenge(user_id, pending_session_token)

            if auth_session.kind != SessionKind.PENDING_MFA:
                raise InvalidSessionError()

            if not user.mfa_enabled:
                raise MfaNotEnabledError()

            now = _utcnow()
            cooldown = timedelta(seconds=settings.mfa_resend_cooldown_seconds)
            if auth_session.code_sent_at is not None and now < auth_session.code_sent_at + cooldown:
                remaining = (auth_session.code_sent_at + cooldown - now).total_seconds()
                raise ResendCooldownError(max(1, math.ceil(remaining)))

            code = generate_mfa_code()
            code_expires_at = now + _code_ttl()
            replaced = await repository.replace_code(
                self.db,
                auth_session,
                code_hash=hash_token(code),
                code_expires_at=code_expires_at,
                code_sent_at=now,
                expires_at=_challenge_expiry(code_expires_at),
            )
            if not replaced:
                # Another resend won the race
                raise ResendCooldownError(settings.mfa_resend_cooldown_seconds)

            sent = await send_mfa_code(
                to_email=user.email,
                first_name=user.first_name,
                code=code,
                expires_in_minutes=settings.mfa_code_ttl_minutes,
            )
            if not sent:
                logger.error(f"Could not deliver verification code to user {user.id}")
                raise AuthenticationFailedError()

            logger.info(f"Verification code resent for user {user.id}")
            return ResendCodeResponse(
                code_expires_at=code_expires_at,
                resend_available_at=now + cooldown,
            )

        except AuthServiceError:
            raise
        except Exception:
            logger.exception(f"Unexpected error resending code for user {user_id}")
            raise AuthenticationFailedError() from None

    # ---------- Sessions ----------

    async def _authenticate(self, session_token: str, *, refresh: bool = False) -> AuthContext:
        if not session_token:
            raise InvalidSessionError()

        auth_session = await repository.get_by_token_hash(self.db, hash_token(session_token))
        if auth_session is None or auth_session.kind != SessionKind.AUTHENTICATED:
            raise InvalidSessionError()

        now = _utcnow()
        if auth_session.expires_at <= now:
            await repository.delete_session(self.db, auth_session)
            logger.info(f"Removed expired session for user {auth_session.user_id}")
            raise InvalidSessionError()

        user = await UserRepository.get_by_id(self.db, auth_session.user_id)
        if user is None or not user.is_active:
            await repository.delete_session(self.db, auth_session)
            raise InvalidSessionError()

        token = session_token
        expires_at = auth_session.expires_at
        refreshed = False
        threshold = timedelta(hours=settings.session_refresh_threshold_hours)
        if refresh and expires_at - now < threshold:
            token = generate_token()
            expires_at = now + _session_ttl()
            rotated = await repository.transition(
                self.db,
                auth_session,
                SessionKind.AUTHENTICATED,
                token_hash=hash_token(token),
                expires_at=expires_at,
            )
            if not rotated:
                raise InvalidSessionError()
            refreshed = True
            logger.info(f"Session refreshed for user {user.id}")

        roles = await UserRepository.get_roles(self.db, user.id)
        primary_role, primary_school_id = select_primary_role(roles, user.school_id)

        return AuthContext(
            user=user,
            session=auth_session,
            roles=roles,
            primary_role=primary_role,
            primary_school_id=primary_school_id,
            session_token=token,
            session_expires_at=expires_at,
            refreshed=refreshed,
        )

    async def require_session(
        self,
        session_token: str,
        roles: Iterable[UserRole] | None = None,
    ) -> AuthContext:
        """
        Resolve a session token for an authenticated operation.

        Args:
            session_token: Final session token
            roles: When given, the user must hold at least one of them

        Raises:
            InvalidSessionError: Token is not a live final session
            PermissionDeniedError: User lacks every required role
        """
        context = await self._authenticate(session_token)
        if roles is not None and not context.has_role(*roles):
            logger.warning(f"User {context.user.id} lacks required role for this action")
            raise PermissionDeniedError()
        return context

    async def validate_session(self, session_token: str) -> SessionValidationResponse:
        """
        Check a session token and return the signed-in identity.

        Never raises: every failure is reported as valid=False.
        """
        try:
            context = await self._authenticate(session_token, refresh=True)
            identity = await self._identity(context.user, context.roles)
        except AuthServiceError:
            return SessionValidationResponse(valid=False)
        except Exception:
            logger.exception("Unexpected error validating session")
            return SessionValidationResponse(valid=False)

        return SessionValidationResponse(
            valid=True,
            **dict(identity),
            session_token=context.session_token,
            session_expires_at=context.session_expires_at,
            refreshed=context.refreshed,
        )

    async def logout(self, session_token: str | None) -> SuccessResponse:
        """
        Revoke a session server-side. Unknown or empty tokens are a no-op.

        Raises:
            ServiceUnavailableError: The session store could not be reached
        """
        if session_token:
            try:
                deleted = await repository.delete_by_token_hash(self.db, hash_token(session_token))
            except SQLAlchemyError as e:
                logger.error(f"Failed to revoke session: {e}")
                raise ServiceUnavailableError() from e
            if deleted:
                logger.info("Session revoked on logout")
        return SuccessResponse(message="Signed out.")

    # ---------- Account settings ----------

    async def change_password(
        self,
        session_token: str,
        current_password: str,
        new_password: str,
    ) -> SuccessResponse:
        """
        Change the signed-in user's password.

        Raises:
            InvalidSessionError, InvalidCredentialsError, ValidationFailedError
        """
        context = await self.require_session(session_token)
        user = context.user

        if not verify_password(current_password, user.password_hash):
            logger.warning(f"Wrong current password on password change for user {user.id}")
            raise InvalidCredentialsError("Current password is incorrect.")

        problems = validate_password_strength(new_password)
        if problems:
            raise ValidationFailedError({"new_password": problems})

        await UserRepository.update_password(self.db, user.id, hash_password(new_password))
        await self.db.commit()

        logger.info(f"Password changed for user {user.id}")
        return SuccessResponse(message="Password updated.")

    async def set_mfa_enabled(self, session_token: str, enabled: bool) -> ToggleMfaResponse:
        """Turn email MFA on or off for the signed-in user."""
        context = await self.require_session(session_token)

        await UserRepository.set_mfa_enabled(self.db, context.user.id, enabled)
        await self.db.commit()

        logger.info(f"MFA {'enabled' if enabled else 'disabled'} for user {context.user.id}")
        return ToggleMfaResponse(mfa_enabled=enabled)

    # ---------- Internals ----------

    async def _identity(self, user: User, roles: list[RoleAssignment]) -> AuthenticatedUser:
        primary_role, primary_school_id = select_primary_role(roles, user.school_id)
        identifier = await SchoolRepository.get_identifier(self.db, primary_school_id)
        return AuthenticatedUser(
            user=UserResponse.model_validate(user),
            roles=[RoleResponse.model_validate(role) for role in roles],
            primary_role=primary_role,
            primary_school_id=primary_school_id,
            primary_school_identifier=identifier,
        )

    async def _signed_in(
        self,
        user: User,
        session_token: str,
        session_expires_at: datetime,
        ip_address: str | None,
    ) -> AuthenticatedResponse:
        now = _utcnow()
        await UserRepository.record_login(self.db, user.id, now)
        await self.db.commit()

        roles = await UserRepository.get_roles(self.db, user.id)
        identity = await self._identity(user, roles)

        _run_in_background(
            send_login_notification(
                to_email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                ip_address=ip_address,
                logged_in_at=now,
            ),
            name=f"login-notification-{user.id}",
        )

        return AuthenticatedResponse(
            **dict(identity),
            session_token=session_token,
            session_expires_at=session_expires_at,
        )
