"""RBAC: authorization decisions over a role hierarchy snapshot.

Provides:
- Permission constants and the bulk operation kinds
- ``AuthorizationEngine``: pure, synchronous permission checks
- Helpers used by the roles API (manageable roles, effective permissions)
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from dojo_console.backend.core.errors import (
    OwnerRoleImmutable,
    PermissionDenied,
    RoleLevelViolation,
    SelfActionForbidden,
)
from dojo_console.backend.core.roles import Role, RoleHierarchy

logger = logging.getLogger(__name__)


# ── Permissions ─────────────────────────────────────────────────

VIEW_ALL_USERS = "view_all_users"
CREATE_USERS = "create_users"
EDIT_ALL_USERS = "edit_all_users"
DELETE_USERS = "delete_users"
CHANGE_ALL_ROLES = "change_all_roles"
CHANGE_ADMIN_AND_BELOW_ROLES = "change_admin_and_below_roles"
EDIT_USER_ROLE_ONLY = "edit_user_role_only"
CHANGE_USER_ROLE_ONLY = "change_user_role_only"
VIEW_AUDIT_LOGS = "view_audit_logs"
MANAGE_SYSTEM = "manage_system"
BULK_OPERATIONS = "bulk_operations"
VIEW_OWN_PROFILE = "view_own_profile"
EDIT_OWN_PROFILE = "edit_own_profile"

ROLE_CHANGE_PERMISSIONS = frozenset({
    CHANGE_ALL_ROLES,
    CHANGE_ADMIN_AND_BELOW_ROLES,
    EDIT_USER_ROLE_ONLY,
    CHANGE_USER_ROLE_ONLY,
})


class BulkOperationKind(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    ROLE_CHANGE = "role_change"
    DELETE = "delete"


# Permissions each kind requires. ROLE_CHANGE is further limited by role levels.
KIND_PERMISSIONS: Dict[BulkOperationKind, FrozenSet[str]] = {
    BulkOperationKind.ACTIVATE: frozenset({BULK_OPERATIONS, EDIT_ALL_USERS}),
    BulkOperationKind.DEACTIVATE: frozenset({BULK_OPERATIONS, EDIT_ALL_USERS}),
    BulkOperationKind.ROLE_CHANGE: frozenset({BULK_OPERATIONS}),
    BulkOperationKind.DELETE: frozenset({BULK_OPERATIONS, DELETE_USERS}),
}

# Kinds an actor may never apply to their own account
SELF_FORBIDDEN_KINDS = frozenset({
    BulkOperationKind.DEACTIVATE,
    BulkOperationKind.DELETE,
    BulkOperationKind.ROLE_CHANGE,
})


@dataclass
class Actor:
    """Authenticated caller resolved against the current role snapshot."""

    id: str
    role: Role


Operation = Union[BulkOperationKind, str]


def _as_kind(operation: Operation) -> Optional[BulkOperationKind]:
    if isinstance(operation, BulkOperationKind):
        return operation
    try:
        return BulkOperationKind(operation)
    except ValueError:
        return None


class AuthorizationEngine:
    """Pure decision functions over one immutable role snapshot."""

    def __init__(self, hierarchy: RoleHierarchy):
        self.hierarchy = hierarchy

    # ── Primitive checks ────────────────────────────────────────

    def is_owner(self, role: Union[Role, str, None]) -> bool:
        return self.hierarchy.is_owner(role)

    def can_perform_operation(self, role: Union[Role, str], operation: Operation) -> bool:
        """True iff the role holds every permission the operation needs.

        ``operation`` is either a bulk kind or a plain permission string.
        """
        permissions = self.hierarchy.permissions(role)
        kind = _as_kind(operation)
        if kind is not None:
            return KIND_PERMISSIONS[kind] <= permissions
        return operation in permissions

    def can_manage_role(self, actor_role: Union[Role, str], target_role: Union[Role, str]) -> bool:
        """Strictly greater level; equal levels are never manageable."""
        return self.hierarchy.level(actor_role) > self.hierarchy.level(target_role)

    # ── Per-target checks ───────────────────────────────────────

    def check_act_on_user(
        self,
        actor: Actor,
        target_id: str,
        target_role: Union[Role, str],
        kind: BulkOperationKind,
        requested_role: Union[Role, str, None] = None,
    ) -> None:
        """Raise the first authorization failure for acting on one target.

        Order: self-action, owner immutability, role level, permission.
        """
        if actor.id == target_id and kind in SELF_FORBIDDEN_KINDS:
            raise SelfActionForbidden(f"Cannot {kind.value} your own account")

        if kind == BulkOperationKind.ROLE_CHANGE:
            if self.is_owner(target_role):
                raise OwnerRoleImmutable("The owner's role cannot be changed")
            if self.is_owner(requested_role):
                raise OwnerRoleImmutable("The owner role cannot be assigned")

        if not self.can_manage_role(actor.role, target_role):
            raise RoleLevelViolation(
                f"Role {actor.role.name!r} cannot manage role {self._name(target_role)!r}"
            )

        if not self.can_perform_operation(actor.role, kind):
            raise PermissionDenied(
                f"Role {actor.role.name!r} is not allowed to {kind.value} users"
            )

    def can_act_on_user(
        self,
        actor: Actor,
        target_id: str,
        target_role: Union[Role, str],
        kind: BulkOperationKind,
        requested_role: Union[Role, str, None] = None,
    ) -> bool:
        try:
            self.check_act_on_user(actor, target_id, target_role, kind, requested_role)
        except (SelfActionForbidden, OwnerRoleImmutable, RoleLevelViolation, PermissionDenied):
            return False
        return True

    def check_operation_access(self, actor: Actor, submitter: Actor) -> None:
        """Raise unless ``actor`` may read or cancel an operation ``submitter`` started.

        The submitter always may; anyone else needs ``bulk_operations`` and a
        level at least the submitter's.
        """
        if actor.id == submitter.id:
            return
        if BULK_OPERATIONS not in self.hierarchy.permissions(actor.role):
            raise PermissionDenied(
                f"Role {actor.role.name!r} is not allowed to manage bulk operations"
            )
        if self.hierarchy.level(actor.role) < submitter.role.level:
            raise RoleLevelViolation(
                f"Role {actor.role.name!r} cannot manage operations started by "
                f"role {submitter.role.name!r}"
            )

    # ── Derived views ───────────────────────────────────────────

    def manageable_roles(self, role: Union[Role, str]) -> List[Role]:
        """Roles strictly below ``role``, highest first; the owner is never included."""
        level = self.hierarchy.level(role)
        return [
            r for r in self.hierarchy.ordered()
            if r.level < level and not self.is_owner(r)
        ]

    def effective_permissions(self, role: Union[Role, str]) -> Dict[str, bool]:
        permissions = self.hierarchy.permissions(role)
        return {
            "can_view_all_users": VIEW_ALL_USERS in permissions,
            "can_create_users": CREATE_USERS in permissions,
            "can_edit_all_users": EDIT_ALL_USERS in permissions,
            "can_delete_users": DELETE_USERS in permissions,
            "can_change_roles": bool(ROLE_CHANGE_PERMISSIONS & permissions),
            "can_view_audit_logs": VIEW_AUDIT_LOGS in permissions,
            "can_bulk_operations": BULK_OPERATIONS in permissions,
            "can_manage_system": MANAGE_SYSTEM in permissions,
        }

    def validate_role_permission(
        self,
        user_role: Union[Role, str],
        required_role: Union[Role, str],
        operation: Operation,
    ) -> dict:
        """Whether ``user_role`` reaches ``required_role`` and may perform ``operation``."""
        user_level = self.hierarchy.level(user_role)
        required_level = self.hierarchy.level(required_role)
        has_permission = (
            user_level >= required_level
            and self.can_perform_operation(user_role, operation)
        )
        return {
            "user_role": self._name(user_role),
            "required_role": self._name(required_role),
            "operation": operation.value if isinstance(operation, Enum) else operation,
            "has_permission": has_permission,
            "validation_details": {
                "user_role_level": user_level,
                "required_role_level": required_level,
            },
        }

    @staticmethod
    def _name(role: Union[Role, str]) -> str:
        return role if isinstance(role, str) else role.name
