"""
orderflow_services.authorization -- In-memory authorization adapter.

Responsibility:
    A static user -> (roles, permissions, warehouses) table implementing
    both AuthorizationPort and ApproverDirectory.  Used by tests, local runs
    and small deployments; production wires its own identity provider to
    the same two protocols.

Invariants:
    - The kernel remains identity-agnostic; it only ever asks has_role,
      has_permission and find_approver.
    - find_approver is deterministic: among several holders of a role at a
      warehouse the lowest user id wins.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

from orderflow_kernel.logging_config import get_logger

logger = get_logger("services.authorization")


@dataclass(frozen=True)
class UserGrant:
    """Everything one user is allowed."""

    user_id: UUID
    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()
    warehouses: frozenset[UUID] = field(default_factory=frozenset)


class StaticAuthorization:
    """In-memory roles, permissions and warehouse assignments."""

    def __init__(self, grants: Iterable[UserGrant] = ()):
        self._lock = threading.Lock()
        self._grants: dict[UUID, UserGrant] = {g.user_id: g for g in grants}

    def grant(
        self,
        user_id: UUID,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
        warehouses: Iterable[UUID] = (),
    ) -> UserGrant:
        """Add roles / permissions / warehouses to a user (merging)."""
        with self._lock:
            current = self._grants.get(user_id, UserGrant(user_id))
            updated = UserGrant(
                user_id=user_id,
                roles=current.roles | frozenset(roles),
                permissions=current.permissions | frozenset(permissions),
                warehouses=current.warehouses | frozenset(warehouses),
            )
            self._grants[user_id] = updated
        return updated

    def revoke(self, user_id: UUID) -> None:
        with self._lock:
            self._grants.pop(user_id, None)

    # AuthorizationPort

    def has_role(self, user_id: UUID, role: str) -> bool:
        grant = self._grants.get(user_id)
        return grant is not None and role in grant.roles

    def has_permission(self, user_id: UUID, permission: str) -> bool:
        grant = self._grants.get(user_id)
        return grant is not None and permission in grant.permissions

    # ApproverDirectory

    def find_approver(self, role: str, warehouse_id: UUID | None) -> UUID | None:
        candidates = sorted(
            (
                g.user_id
                for g in self._grants.values()
                if role in g.roles
                and (warehouse_id is None or warehouse_id in g.warehouses)
            ),
            key=str,
        )
        if not candidates:
            logger.debug(
                "approver_lookup_empty",
                extra={"role": role, "warehouse_id": str(warehouse_id)},
            )
            return None
        return candidates[0]
