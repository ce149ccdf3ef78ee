"""
Authentication Session Repository

Database operations for sessions and pending MFA challenges.

Every write that depends on the state a caller previously read is a
conditional UPDATE/DELETE keyed on the token digest it read. Two
requests racing on the same challenge or session therefore cannot both
succeed: the loser sees zero affected rows.

Writes commit immediately so side effects (attempt counters, cleared
codes, revoked sessions) persist even when the caller goes on to raise.
delete_for_user can instead join the caller's transaction.
"""

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuthSession, SessionKind

logger = logging.getLogger(__name__)


async def create_session(
    db: AsyncSession,
    *,
    user_id: str,
    kind: SessionKind,
    token_hash: str,
    expires_at: datetime,
    code_hash: str | None = None,
    code_expires_at: datetime | None = None,
    code_sent_at: datetime | None = None,
) -> AuthSession:
    """
    Start a new session or challenge for a user.

    Any existing row for the user is replaced, so a fresh login
    supersedes earlier sessions and challenges.
    """
    await db.execute(delete(AuthSession).where(AuthSession.user_id == str(user_id)))

    auth_session = AuthSession(
        user_id=str(user_id),
        kind=kind,
        token_hash=token_hash,
        expires_at=expires_at,
        code_hash=code_hash,
        code_expires_at=code_expires_at,
        code_sent_at=code_sent_at,
        failed_attempts=0,
    )
    db.add(auth_session)
    await db.commit()
    await db.refresh(auth_session)

    return auth_session


async def get_by_user(db: AsyncSession, user_id: str) -> AuthSession | None:
    """Get the session or challenge held by a user."""
    result = await db.execute(select(AuthSession).where(AuthSession.user_id == str(user_id)))
    return result.scalar_one_or_none()


async def get_by_token_hash(db: AsyncSession, token_hash: str) -> AuthSession | None:
    """Get a session by the digest of its token."""
    result = await db.execute(select(AuthSession).where(AuthSession.token_hash == token_hash))
    return result.scalar_one_or_none()


# Pending challenges can only be promoted; authenticated sessions can
# only be refreshed in place. Nothing ever goes back to PENDING_MFA.
VALID_SESSION_TRANSITIONS: dict[SessionKind, set[SessionKind]] = {
    SessionKind.PENDING_MFA: {SessionKind.AUTHENTICATED},
    SessionKind.AUTHENTICATED: {SessionKind.AUTHENTICATED},
}


class InvalidSessionTransitionError(ValueError):
    """Raised when an invalid session transition is attempted."""

    def __init__(self, current_kind: SessionKind, new_kind: SessionKind):
        self.current_kind = current_kind
        self.new_kind = new_kind
        valid_transitions = VALID_SESSION_TRANSITIONS.get(current_kind, set())
        super().__init__(
            f"Invalid session transition: {current_kind.value} -> {new_kind.value}. "
            f"Valid transitions: {[k.value for k in valid_transitions]}"
        )


async def transition(
    db: AsyncSession,
    auth_session: AuthSession,
    new_kind: SessionKind,
    *,
    token_hash: str,
    expires_at: datetime,
    expected_code_hash: str | None = None,
) -> bool:
    """
    Move a session to a new kind under a freshly issued token.

    The update only applies if the row still carries the kind and token
    the caller read (and, for challenges, the expected code digest).
    The pending code is always cleared.

    Returns:
        True if this call performed the transition, False if the row
        changed or disappeared in the meantime

    Raises:
        InvalidSessionTransitionError: If the transition is not allowed
    """
    current_kind = auth_session.kind
    if new_kind not in VALID_SESSION_TRANSITIONS.get(current_kind, set()):
        raise InvalidSessionTransitionError(current_kind, new_kind)

    conditions = [
        AuthSession.id == auth_session.id,
        AuthSession.kind == current_kind,
        AuthSession.token_hash == auth_session.token_hash,
    ]
    if expected_code_hash is not None:
        conditions.append(AuthSession.code_hash == expected_code_hash)

    result = await db.execute(
        update(AuthSession)
        .where(*conditions)
        .values(
            kind=new_kind,
            token_hash=token_hash,
            expires_at=expires_at,
            code_hash=None,
            code_expires_at=None,
            code_sent_at=None,
            failed_attempts=0,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    return result.rowcount == 1


async def replace_code(
    db: AsyncSession,
    auth_session: AuthSession,
    *,
    code_hash: str,
    code_expires_at: datetime,
    code_sent_at: datetime,
    expires_at: datetime,
) -> bool:
    """
    Issue a new code for a pending challenge.

    The old code stops working, the attempt counter restarts and the
    challenge lifetime is extended to `expires_at`. Conditional on the code
    the caller saw still being the current one.
    """
    result = await db.execute(
        update(AuthSession)
        .where(
            AuthSession.id == auth_session.id,
            AuthSession.kind == SessionKind.PENDING_MFA,
            AuthSession.token_hash == auth_session.token_hash,
            AuthSession.code_sent_at == auth_session.code_sent_at,
        )
        .values(
            code_hash=code_hash,
            code_expires_at=code_expires_at,
            code_sent_at=code_sent_at,
            expires_at=expires_at,
            failed_attempts=0,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    return result.rowcount == 1


async def clear_code(db: AsyncSession, auth_session: AuthSession) -> None:
    """
    Forget an expired code.

    The expiry timestamp is kept so later checks keep reporting the
    code as expired.
    """
    await db.execute(
        update(AuthSession)
        .where(
            AuthSession.id == auth_session.id,
            AuthSession.token_hash == auth_session.token_hash,
        )
        .values(code_hash=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def record_failed_attempt(db: AsyncSession, auth_session: AuthSession) -> int | None:
    """
    Atomically count a wrong code against a pending challenge.

    Returns:
        The new number of failed attempts, or None if the challenge is
        no longer the one the caller read
    """
    result = await db.execute(
        update(AuthSession)
        .where(
            AuthSession.id == auth_session.id,
            AuthSession.kind == SessionKind.PENDING_MFA,
            AuthSession.token_hash == auth_session.token_hash,
        )
        .values(failed_attempts=AuthSession.failed_attempts + 1)
        .returning(AuthSession.failed_attempts)
        .execution_options(synchronize_session=False)
    )
    attempts = result.scalar_one_or_none()
    await db.commit()

    return attempts


async def delete_session(db: AsyncSession, auth_session: AuthSession) -> None:
    """Delete a session if it still carries the token the caller read."""
    await db.execute(
        delete(AuthSession).where(
            AuthSession.id == auth_session.id,
            AuthSession.token_hash == auth_session.token_hash,
        )
    )
    await db.commit()


async def delete_by_token_hash(db: AsyncSession, token_hash: str) -> int:
    """Delete the session identified by a token digest. Returns rows deleted."""
    result = await db.execute(delete(AuthSession).where(AuthSession.token_hash == token_hash))
    await db.commit()
    return result.rowcount


async def delete_for_user(db: AsyncSession, user_id: str, *, commit: bool = True) -> int:
    """
    Revoke every session and challenge held by a user.

    With commit=False the delete joins the caller's transaction, so it
    lands together with the caller's own writes or not at all.
    """
    result = await db.execute(delete(AuthSession).where(AuthSession.user_id == str(user_id)))
    if commit:
        await db.commit()

    if result.rowcount:
        logger.info(f"Revoked {result.rowcount} session(s) for user {user_id}")
    return result.rowcount


async def delete_expired(db: AsyncSession, now: datetime) -> int:
    """Delete sessions and challenges whose lifetime has ended."""
    result = await db.execute(delete(AuthSession).where(AuthSession.expires_at <= now))
    await db.commit()
    return result.rowcount
