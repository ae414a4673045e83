"""Role registry — capability-based authorization for privileged operations.

Three roles, checked explicitly per operation:

- COMMITTER: commits epoch settlements.
- ARBITER: resolves disputes.
- ADMIN: sets pricing policy, grants and revokes roles, cancels
  settlements, pauses and unpauses the ledger.

An actor may hold several roles. The registry is bootstrapped with one
admin and always keeps at least one.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from epochpay.errors import AccessDenied, StateConflict, ValidationError

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    COMMITTER = "committer"
    ARBITER = "arbiter"
    ADMIN = "admin"


class RoleRegistry:
    """Tracks which actors hold which roles.

    Usage:
        roles = RoleRegistry(admin_id="ops")
        roles.grant("ops", "aggregator", Role.COMMITTER)
        roles.require("aggregator", Role.COMMITTER)
    """

    def __init__(self, admin_id: str) -> None:
        if not admin_id or not admin_id.strip():
            raise ValueError("admin_id must not be empty")
        self._holders: dict[Role, set[str]] = {role: set() for role in Role}
        self._holders[Role.ADMIN].add(admin_id.strip())

    def has_role(self, actor_id: str, role: Role) -> bool:
        return actor_id in self._holders[role]

    def require(self, actor_id: str, role: Role) -> None:
        """Raise AccessDenied unless ``actor_id`` holds ``role``."""
        if not self.has_role(actor_id, role):
            logger.warning("Access denied: %s lacks role %s", actor_id, role.value)
            raise AccessDenied(
                f"Actor {actor_id} lacks required role: {role.value}",
                {"actor_id": actor_id, "role": role.value},
            )

    def grant(self, caller: str, actor_id: str, role: Role) -> bool:
        """Grant a role. Returns False if the actor already held it."""
        self.require(caller, Role.ADMIN)
        actor_id = actor_id.strip()
        if not actor_id:
            raise ValidationError("actor_id must not be empty")
        if actor_id in self._holders[role]:
            return False
        self._holders[role].add(actor_id)
        logger.info("Role %s granted to %s by %s", role.value, actor_id, caller)
        return True

    def revoke(self, caller: str, actor_id: str, role: Role) -> bool:
        """Revoke a role. Returns False if the actor did not hold it."""
        self.require(caller, Role.ADMIN)
        if actor_id not in self._holders[role]:
            return False
        if role == Role.ADMIN and len(self._holders[Role.ADMIN]) == 1:
            raise StateConflict("Cannot revoke the last admin")
        self._holders[role].discard(actor_id)
        logger.info("Role %s revoked from %s by %s", role.value, actor_id, caller)
        return True

    def holders(self, role: Role) -> list[str]:
        return sorted(self._holders[role])

    def to_records(self) -> dict[str, list[str]]:
        return {role.value: sorted(ids) for role, ids in self._holders.items()}

    def load_records(self, records: dict[str, Any]) -> None:
        holders: dict[Role, set[str]] = {role: set() for role in Role}
        for role_name, ids in records.items():
            holders[Role(role_name)] = set(ids)
        if not holders[Role.ADMIN]:
            raise ValueError("Role records contain no admin")
        self._holders = holders

    @classmethod
    def from_records(cls, records: dict[str, Any]) -> RoleRegistry:
        admins = records.get(Role.ADMIN.value) or []
        if not admins:
            raise ValueError("Role records contain no admin")
        registry = cls(admins[0])
        registry.load_records(records)
        return registry
