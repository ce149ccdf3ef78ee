"""
Fixtures for module tests.

Provides an in-memory stand-in for the user, school and session
repositories. The fakes keep the call signatures of the real
repositories and honour their conditional-update semantics: rows are
handed out as copies, and writes only apply when the stored row still
matches the copy the caller read.
"""

from datetime import datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from app.core.security import hash_password, normalize_email
from app.modules.auth.models import AuthSession, SessionKind
from app.modules.auth.repository import VALID_SESSION_TRANSITIONS, InvalidSessionTransitionError
from app.modules.schools.models import School, SchoolStatus
from app.modules.users.models import RoleAssignment, User, UserRole

_SESSION_FIELDS = (
    "id",
    "user_id",
    "kind",
    "token_hash",
    "expires_at",
    "code_hash",
    "code_expires_at",
    "code_sent_at",
    "failed_attempts",
)


def _snapshot(row: AuthSession | None) -> AuthSession | None:
    if row is None:
        return None
    return AuthSession(**{field: getattr(row, field) for field in _SESSION_FIELDS})


class InMemoryStore:
    """Users, role assignments, schools and sessions kept in dicts."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.roles: list[RoleAssignment] = []
        self.schools: dict[str, School] = {}
        self.sessions: dict[str, AuthSession] = {}  # keyed by user_id

    def add_school(self, name: str = "Lycée Moderne de Cocody", identifier: str = "lycee-cocody") -> School:
        school = School(
            id=str(uuid4()),
            name=name,
            identifier=identifier,
            status=SchoolStatus.ACTIVE,
            is_active=True,
        )
        self.schools[school.id] = school
        return school

    def add_user(
        self,
        email: str,
        password: str | None = "Str0ngPass1",
        *,
        roles: tuple[tuple[UserRole, str | None], ...] = (),
        school_id: str | None = None,
        mfa_enabled: bool = False,
        is_active: bool = True,
        password_hash: str | None = None,
        first_name: str = "Awa",
        last_name: str = "Koné",
    ) -> User:
        if password_hash is None and password is not None:
            password_hash = hash_password(password)

        user = User(
            id=str(uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            phone=None,
            school_id=school_id,
            teacher_id=None,
            student_id=None,
            is_active=is_active,
            mfa_enabled=mfa_enabled,
            invitation_token_hash=None,
            invitation_expires_at=None,
            last_login_at=None,
        )
        self.users[user.id] = user
        for role, role_school_id in roles:
            self.roles.append(RoleAssignment(id=str(uuid4()), user_id=user.id, role=role, school_id=role_school_id))
        return user

    def session_for(self, user_id: str) -> AuthSession | None:
        return self.sessions.get(user_id)


class FakeUserRepository:
    """Mirrors UserRepository."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(
        self,
        db,
        *,
        email,
        password_hash,
        first_name,
        last_name,
        school_id=None,
        phone=None,
        teacher_id=None,
        student_id=None,
        is_active=True,
        mfa_enabled=False,
        invitation_token_hash=None,
        invitation_expires_at=None,
    ) -> User:
        user = User(
            id=str(uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            school_id=school_id,
            teacher_id=teacher_id,
            student_id=student_id,
            is_active=is_active,
            mfa_enabled=mfa_enabled,
            invitation_token_hash=invitation_token_hash,
            invitation_expires_at=invitation_expires_at,
            last_login_at=None,
        )
        self.store.users[user.id] = user
        return user

    async def get_by_id(self, db, user_id) -> User | None:
        return self.store.users.get(str(user_id))

    async def get_by_email(self, db, email) -> User | None:
        email = normalize_email(email)
        return next((u for u in self.store.users.values() if u.email == email), None)

    async def email_exists(self, db, email) -> bool:
        return await self.get_by_email(db, email) is not None

    async def get_by_invitation_token_hash(self, db, token_hash) -> User | None:
        return next(
            (u for u in self.store.users.values() if u.invitation_token_hash == token_hash),
            None,
        )

    async def get_roles(self, db, user_id) -> list[RoleAssignment]:
        return [r for r in self.store.roles if r.user_id == str(user_id)]

    async def add_role(self, db, *, user_id, role, school_id=None, granted_by=None) -> RoleAssignment:
        assignment = RoleAssignment(
            id=str(uuid4()),
            user_id=str(user_id),
            role=role,
            school_id=school_id,
            granted_by=granted_by,
        )
        self.store.roles.append(assignment)
        return assignment

    async def update_password(self, db, user_id, password_hash, *, activate=False) -> None:
        user = self.store.users[str(user_id)]
        user.password_hash = password_hash
        user.invitation_token_hash = None
        user.invitation_expires_at = None
        if activate:
            user.is_active = True

    async def set_invitation_token(self, db, user_id, token_hash, expires_at) -> None:
        user = self.store.users[str(user_id)]
        user.invitation_token_hash = token_hash
        user.invitation_expires_at = expires_at

    async def set_mfa_enabled(self, db, user_id, enabled) -> None:
        self.store.users[str(user_id)].mfa_enabled = enabled

    async def record_login(self, db, user_id, logged_in_at) -> None:
        self.store.users[str(user_id)].last_login_at = logged_in_at


class FakeSchoolRepository:
    """Mirrors SchoolRepository."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_by_id(self, db, school_id) -> School | None:
        return self.store.schools.get(str(school_id))

    async def get_identifier(self, db, school_id) -> str | None:
        if not school_id:
            return None
        school = self.store.schools.get(str(school_id))
        return school.identifier if school else None


class FakeSessionRepository:
    """Mirrors the functions of app.modules.auth.repository."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    def _current(self, snapshot: AuthSession) -> AuthSession | None:
        row = self.store.sessions.get(snapshot.user_id)
        if row is None or row.id != snapshot.id or row.token_hash != snapshot.token_hash:
            return None
        return row

    async def create_session(
        self,
        db,
        *,
        user_id,
        kind,
        token_hash,
        expires_at,
        code_hash=None,
        code_expires_at=None,
        code_sent_at=None,
    ) -> AuthSession:
        row = AuthSession(
            id=str(uuid4()),
            user_id=str(user_id),
            kind=kind,
            token_hash=token_hash,
            expires_at=expires_at,
            code_hash=code_hash,
            code_expires_at=code_expires_at,
            code_sent_at=code_sent_at,
            failed_attempts=0,
        )
        self.store.sessions[row.user_id] = row
        return _snapshot(row)

    async def get_by_user(self, db, user_id) -> AuthSession | None:
        return _snapshot(self.store.sessions.get(str(user_id)))

    async def get_by_token_hash(self, db, token_hash) -> AuthSession | None:
        row = next((s for s in self.store.sessions.values() if s.token_hash == token_hash), None)
        return _snapshot(row)

    async def transition(
        self,
        db,
        auth_session,
        new_kind,
        *,
        token_hash,
        expires_at,
        expected_code_hash=None,
    ) -> bool:
        if new_kind not in VALID_SESSION_TRANSITIONS.get(auth_session.kind, set()):
            raise InvalidSessionTransitionError(auth_session.kind, new_kind)

        row = self._current(auth_session)
        if row is None or row.kind != auth_session.kind:
            return False
        if expected_code_hash is not None and row.code_hash != expected_code_hash:
            return False

        row.kind = new_kind
        row.token_hash = token_hash
        row.expires_at = expires_at
        row.code_hash = None
        row.code_expires_at = None
        row.code_sent_at = None
        row.failed_attempts = 0
        return True

    async def replace_code(self, db, auth_session, *, code_hash, code_expires_at, code_sent_at, expires_at) -> bool:
        row = self._current(auth_session)
        if row is None or row.kind != SessionKind.PENDING_MFA or row.code_sent_at != auth_session.code_sent_at:
            return False

        row.code_hash = code_hash
        row.code_expires_at = code_expires_at
        row.code_sent_at = code_sent_at
        row.expires_at = expires_at
        row.failed_attempts = 0
        return True

    async def clear_code(self, db, auth_session) -> None:
        row = self._current(auth_session)
        if row is not None:
            row.code_hash = None

    async def record_failed_attempt(self, db, auth_session) -> int | None:
        row = self._current(auth_session)
        if row is None or row.kind != SessionKind.PENDING_MFA:
            return None
        row.failed_attempts += 1
        return row.failed_attempts

    async def delete_session(self, db, auth_session) -> None:
        if self._current(auth_session) is not None:
            del self.store.sessions[auth_session.user_id]

    async def delete_by_token_hash(self, db, token_hash) -> int:
        for user_id, row in list(self.store.sessions.items()):
            if row.token_hash == token_hash:
                del self.store.sessions[user_id]
                return 1
        return 0

    async def delete_for_user(self, db, user_id, *, commit=True) -> int:
        return 1 if self.store.sessions.pop(str(user_id), None) is not None else 0

    async def delete_expired(self, db, now: datetime) -> int:
        expired = [user_id for user_id, row in self.store.sessions.items() if row.expires_at <= now]
        for user_id in expired:
            del self.store.sessions[user_id]
        return len(expired)


class Mailer:
    """Captures what would have been emailed."""

    def __init__(self):
        self.send_mfa_code = AsyncMock(return_value=True)
        self.send_login_notification = AsyncMock(return_value=True)
        self.send_account_invitation = AsyncMock(return_value=True)
        self.send_password_reset = AsyncMock(return_value=True)

    @property
    def last_code(self) -> str:
        return self.send_mfa_code.call_args.kwargs["code"]

    @property
    def last_invitation_token(self) -> str:
        return self.send_account_invitation.call_args.kwargs["token"]

    @property
    def last_reset_token(self) -> str:
        return self.send_password_reset.call_args.kwargs["token"]


@pytest.fixture
def store():
    """Empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def mailer():
    return Mailer()


@pytest.fixture
def fake_sessions(store):
    return FakeSessionRepository(store)


@pytest.fixture
def patched_repositories(store, mailer, fake_sessions):
    """Route the auth and user services to the in-memory store."""
    users = FakeUserRepository(store)
    schools = FakeSchoolRepository(store)
    with (
        patch("app.modules.auth.service.UserRepository", users),
        patch("app.modules.auth.service.SchoolRepository", schools),
        patch("app.modules.auth.service.repository", fake_sessions),
        patch("app.modules.auth.service.send_mfa_code", mailer.send_mfa_code),
        patch("app.modules.auth.service.send_login_notification", mailer.send_login_notification),
        patch("app.modules.users.service.UserRepository", users),
        patch("app.modules.users.service.SchoolRepository", schools),
        patch("app.modules.users.service.session_repository", fake_sessions),
        patch("app.modules.users.service.send_account_invitation", mailer.send_account_invitation),
        patch("app.modules.users.service.send_password_reset", mailer.send_password_reset),
    ):
        yield store
