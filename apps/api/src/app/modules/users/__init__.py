"""
Users module - Identity, roles and account administration.
"""

from app.modules.users.models import RoleAssignment, User, UserRole
from app.modules.users.repository import UserRepository

__all__ = ["RoleAssignment", "User", "UserRole", "UserRepository"]
