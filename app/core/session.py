"""
Session context: who is acting.

Replaces any ambient "current user" global: the presentation shell (or the
JSON adapter) builds a SessionContext once per request and passes it into
every engine operation that needs an actor for history attribution or a
role check.

Usage:
    from app.core.session import SessionContext

    ctx = SessionContext.for_user(user)
    task_lifecycle.change_status(task_id, "in_progress", ctx)
"""

from __future__ import annotations

from dataclasses import dataclass

from app.core.exceptions import PermissionDenied
from app.models.organization import RoleKey


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    full_name: str = ""
    role_key: RoleKey = RoleKey.FUNCTIONARY

    @classmethod
    def for_user(cls, user) -> "SessionContext":
        return cls(
            user_id=user.id,
            full_name=user.full_name,
            role_key=user.role_key or RoleKey.FUNCTIONARY,
        )

    def has_role(self, *keys: RoleKey) -> bool:
        return self.role_key in keys

    def require_role(self, action: str, *keys: RoleKey) -> None:
        """Raise PermissionDenied unless the actor holds one of *keys*."""
        if not self.has_role(*keys):
            raise PermissionDenied(self.user_id, action, {k.value for k in keys})
