"""Inbox command dispatcher and base handler."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

from taskengine.infrastructure.logger import logger
from taskengine.tasks.authorization import AuthContext, AuthorizationPolicy

if TYPE_CHECKING:
    from taskengine.ipc.watcher import IpcDeps


class IpcHandlerError(Exception):
    """Error raised by inbox handlers for expected failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


@dataclass
class HandlerContext:
    principal_id: str
    is_admin: bool
    deps: IpcDeps

    @property
    def auth(self) -> AuthorizationPolicy:
        return AuthorizationPolicy(AuthContext(principal_id=self.principal_id, is_admin=self.is_admin))


class IpcCommandHandler(ABC):
    """Base class for inbox command handlers."""

    @property
    @abstractmethod
    def command(self) -> str: ...

    @abstractmethod
    async def validate(self, data: dict[str, Any]) -> Any: ...

    @abstractmethod
    async def execute(self, payload: Any, context: HandlerContext) -> None: ...

    async def handle(self, data: dict[str, Any], principal_id: str, is_admin: bool, deps: IpcDeps) -> None:
        context = HandlerContext(principal_id=principal_id, is_admin=is_admin, deps=deps)
        validated = await self.validate(data)
        await self.execute(validated, context)


class IpcCommandDispatcher:
    """Routes inbox commands to registered handlers."""

    def __init__(self, handlers: list[IpcCommandHandler]) -> None:
        self._handlers: dict[str, IpcCommandHandler] = {h.command: h for h in handlers}

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, data: dict[str, Any], principal_id: str, is_admin: bool, deps: IpcDeps) -> None:
        """Run the handler for data["type"]. Rejections are logged and re-raised as IpcHandlerError."""
        command_type = data.get("type")
        handler = self._handlers.get(command_type)  # type: ignore[arg-type]
        if not handler:
            raise IpcHandlerError("Unknown inbox command", {"type": command_type})
        try:
            await handler.handle(data, principal_id, is_admin, deps)
        except IpcHandlerError as err:
            logger.warning(err.args[0], command=command_type, principal_id=principal_id, details=err.details)
            raise
