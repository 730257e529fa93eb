"""API dependencies for the admin console.

Authentication happens upstream: the gateway forwards the caller's id
and role name in ``X-Actor-Id`` / ``X-Actor-Role``. Here the role name is
resolved against the current role hierarchy snapshot.
"""
import logging
from typing import Optional

from fastapi import Depends, Header, Request

from dojo_console.backend.core.errors import E, FetchError, RoleNotFound, api_error, to_http_error
from dojo_console.backend.core.manager import BulkOperationManager
from dojo_console.backend.core.rbac import Actor
from dojo_console.backend.core.roles import RoleHierarchyStore

logger = logging.getLogger(__name__)


def get_role_store(request: Request) -> RoleHierarchyStore:
    return request.app.state.role_store


def get_bulk_manager(request: Request) -> BulkOperationManager:
    return request.app.state.bulk_manager


async def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
    store: RoleHierarchyStore = Depends(get_role_store),
) -> Actor:
    """Resolve the authenticated caller from gateway headers."""
    if not x_actor_id or not x_actor_role:
        raise api_error(401, E.UNAUTHENTICATED)

    try:
        hierarchy = await store.ensure_loaded()
    except FetchError as e:
        logger.error("Role hierarchy unavailable: %s", e.detail)
        raise to_http_error(e)

    try:
        role = hierarchy.get_role(x_actor_role)
    except RoleNotFound:
        logger.warning("Actor %s presented unknown role '%s'", x_actor_id, x_actor_role)
        raise api_error(403, E.PERMISSION_DENIED, f"Unknown role: {x_actor_role}")

    return Actor(id=x_actor_id, role=role)


def require_permission(permission: str):
    """Create a dependency that checks for a specific permission.

    Usage in endpoint:
        @router.post("/roles/refresh")
        async def refresh(actor: Actor = Depends(require_permission("manage_system"))):
            ...
    """
    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.role.has_permission(permission):
            logger.warning(
                "Permission denied: %s (%s) -> %s",
                actor.id, actor.role.name, permission,
            )
            raise api_error(403, E.PERMISSION_DENIED, f"Permission denied: {permission}")
        return actor

    return _check
