"""
Authentication Models

Server-side session state. A user has at most one row: either a pending
MFA challenge or an authenticated session. No row means signed out.
"""

import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import ENUM, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.modules.shared import BaseModel


class SessionKind(str, enum.Enum):
    """What a session token currently proves."""

    PENDING_MFA = "pending_mfa"  # Password verified, emailed code outstanding
    AUTHENTICATED = "authenticated"


class AuthSession(BaseModel):
    """
    Session or pending MFA challenge for a user.

    Only SHA-256 digests of the token and code are stored. The code
    columns are only populated while kind is PENDING_MFA.
    """

    __tablename__ = "auth_sessions"

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    kind: Mapped[SessionKind] = mapped_column(
        ENUM(SessionKind, name="session_kind", create_type=True),
        nullable=False,
    )

    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Pending challenge
    code_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    code_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    code_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (Index("ix_auth_sessions_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        return f"<AuthSession(user_id={self.user_id}, kind={self.kind.value}, expires_at={self.expires_at})>"
