"""
Auth module - Sign-in, MFA challenges and server-side sessions.
"""

from app.modules.auth.models import AuthSession, SessionKind

__all__ = ["AuthSession", "SessionKind"]
