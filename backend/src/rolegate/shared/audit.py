"""Audit collaborator for administrative mutations."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


class AuditAction:
    """Action names recorded for admin mutations."""

    ROLE_CREATED = "ROLE_CREATED"
    ROLE_UPDATED = "ROLE_UPDATED"
    ROLE_DELETED = "ROLE_DELETED"
    ROLE_CLONED = "ROLE_CLONED"
    ROLE_PERMISSIONS_UPDATED = "ROLE_PERMISSIONS_UPDATED"
    USERS_ASSIGNED_TO_ROLE = "USERS_ASSIGNED_TO_ROLE"
    USERS_REMOVED_FROM_ROLE = "USERS_REMOVED_FROM_ROLE"

    PERMISSION_CREATED = "PERMISSION_CREATED"
    PERMISSION_UPDATED = "PERMISSION_UPDATED"
    PERMISSION_DELETED = "PERMISSION_DELETED"

    CREATE_MENU = "CREATE_MENU"
    UPDATE_MENU = "UPDATE_MENU"
    MOVE_MENU = "MOVE_MENU"
    REORDER_MENUS = "REORDER_MENUS"
    DELETE_MENU = "DELETE_MENU"
    UPDATE_MENU_PERMISSION = "UPDATE_MENU_PERMISSION"
    BATCH_UPDATE_MENU_PERMISSIONS = "BATCH_UPDATE_MENU_PERMISSIONS"
    REMOVE_ALL_MENU_PERMISSIONS = "REMOVE_ALL_MENU_PERMISSIONS"

    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_ROLES_UPDATED = "USER_ROLES_UPDATED"
    USERS_ACTIVATED = "USERS_ACTIVATED"
    USERS_DEACTIVATED = "USERS_DEACTIVATED"


class AuditLogger(ABC):
    """Receives one record per committed administrative mutation."""

    @abstractmethod
    async def log(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record an audit event.

        Args:
            actor_id: User who performed the action
            action: One of the AuditAction names
            resource_type: Kind of entity affected (role, permission, menu)
            resource_id: Identifier of the affected entity
            details: Optional structured context
        """
        pass


class LoggingAuditLogger(AuditLogger):
    """Writes audit events as structured log records."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self._logger = audit_logger or logging.getLogger("rolegate.audit")

    async def log(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._logger.info(
            f"{action} {resource_type}:{resource_id} by {actor_id}",
            extra={
                "event": "audit",
                "action": action,
                "actor_id": actor_id,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "details": details or {},
            },
        )


# In-flight audit writes, held until they finish
_pending_audits: Set[asyncio.Task] = set()


def _audit_done(task: asyncio.Task) -> None:
    _pending_audits.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(
            f"Audit logging failed ({task.get_name()}): {error}",
            exc_info=error,
        )


def record_audit(
    audit: AuditLogger,
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> asyncio.Task:
    """
    Hand an audit event to the sink without waiting for it.

    The write runs as a background task; a failing sink is logged and never
    reaches the mutation that produced the event.
    """
    task = asyncio.get_running_loop().create_task(
        audit.log(actor_id, action, resource_type, resource_id, details),
        name=f"audit:{action}:{resource_type}:{resource_id}",
    )
    _pending_audits.add(task)
    task.add_done_callback(_audit_done)
    return task


async def drain_audit() -> None:
    """Wait for every audit write still in flight on this loop (used at shutdown)."""
    loop = asyncio.get_running_loop()
    while True:
        # writes left on a closed loop can never finish
        for task in [t for t in _pending_audits if t.get_loop().is_closed()]:
            _pending_audits.discard(task)

        pending = [t for t in _pending_audits if t.get_loop() is loop]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)
        # done-callbacks empty the set
        await asyncio.sleep(0)


# Global audit logger instance (singleton)
_audit_instance: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the global AuditLogger instance."""
    global _audit_instance
    if _audit_instance is None:
        _audit_instance = LoggingAuditLogger()
    return _audit_instance
