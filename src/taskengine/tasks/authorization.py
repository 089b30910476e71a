"""Principal-based authorization policy."""

from __future__ import annotations

from dataclasses import dataclass

from taskengine.infrastructure.config import ADMIN_PRINCIPAL


@dataclass
class AuthContext:
    principal_id: str
    is_admin: bool

    @classmethod
    def for_principal(cls, principal_id: str) -> AuthContext:
        return cls(principal_id=principal_id, is_admin=principal_id == ADMIN_PRINCIPAL)


class AuthorizationPolicy:
    """Authorization checks for a single requesting principal."""

    def __init__(self, ctx: AuthContext) -> None:
        self._ctx = ctx

    @property
    def principal_id(self) -> str:
        return self._ctx.principal_id

    @property
    def is_admin(self) -> bool:
        return self._ctx.is_admin

    def can_create_task(self, owner_principal_id: str) -> bool:
        """Non-admin principals can only create tasks they own."""
        return self._ctx.is_admin or owner_principal_id == self._ctx.principal_id

    def can_manage_task(self, task_principal_id: str) -> bool:
        """Non-admin principals can only manage their own tasks."""
        return self._ctx.is_admin or task_principal_id == self._ctx.principal_id

    def can_delete_agent_tasks(self) -> bool:
        return self._ctx.is_admin
