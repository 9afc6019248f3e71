"""
Ports consumed by the workflow engine.

Authorization, approver lookup and notification delivery live outside the
kernel.  Services receive implementations of these protocols at
construction time; nothing queries a global user object.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID


class AuthorizationPort(Protocol):
    """Role and permission checks for a user."""

    def has_role(self, user_id: UUID, role: str) -> bool:
        ...

    def has_permission(self, user_id: UUID, permission: str) -> bool:
        ...


class ApproverDirectory(Protocol):
    """Resolves the user that holds a role at a warehouse."""

    def find_approver(self, role: str, warehouse_id: UUID | None) -> UUID | None:
        ...


class NotificationPort(Protocol):
    """Fire-and-forget event delivery (stock alerts, approval requests)."""

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        ...
