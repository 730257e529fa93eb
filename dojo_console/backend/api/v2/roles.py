"""Role hierarchy API endpoints."""
import logging

from fastapi import APIRouter, Depends, Request

from dojo_console.backend.api.deps import get_current_actor, get_role_store, require_permission
from dojo_console.backend.core.errors import EngineError, MissingMetadata, to_http_error
from dojo_console.backend.core.rate_limit import RATE_MUTATIONS, RATE_READ, limiter
from dojo_console.backend.core.rbac import MANAGE_SYSTEM, Actor, AuthorizationEngine
from dojo_console.backend.core.roles import RoleHierarchyStore
from dojo_console.backend.schemas.role import (
    EffectivePermissionsResponse,
    ManageableRolesResponse,
    RoleItem,
    RoleListResponse,
    RoleMetadataResponse,
    RoleRefreshResponse,
    ValidateRolePermissionRequest,
    ValidateRolePermissionResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=RoleListResponse)
@limiter.limit(RATE_READ)
async def list_roles(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """All roles, highest level first."""
    hierarchy = store.snapshot()
    return RoleListResponse(
        roles=[RoleItem.from_role(r, hierarchy.is_owner(r)) for r in hierarchy.ordered()],
        owner=hierarchy.owner.name,
    )


@router.get("/manageable", response_model=ManageableRolesResponse)
@limiter.limit(RATE_READ)
async def get_manageable_roles(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """Roles the caller may assign to others."""
    engine = AuthorizationEngine(store.snapshot())
    roles = engine.manageable_roles(actor.role)
    return ManageableRolesResponse(
        current_user_role=actor.role.name,
        manageable_roles=[r.name for r in roles],
        detailed_roles=[RoleItem.from_role(r) for r in roles],
    )


@router.get("/effective-permissions", response_model=EffectivePermissionsResponse)
@limiter.limit(RATE_READ)
async def get_effective_permissions(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    engine = AuthorizationEngine(store.snapshot())
    return EffectivePermissionsResponse(
        user_id=actor.id,
        role=actor.role.name,
        role_level=actor.role.level,
        permissions=sorted(actor.role.permissions),
        can_manage_roles=[r.name for r in engine.manageable_roles(actor.role)],
        effective_permissions=engine.effective_permissions(actor.role),
    )


@router.post("/validate", response_model=ValidateRolePermissionResponse)
@limiter.limit(RATE_MUTATIONS)
async def validate_role_permission(
    request: Request,
    body: ValidateRolePermissionRequest,
    actor: Actor = Depends(get_current_actor),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """Check whether one role reaches another and may perform an operation."""
    engine = AuthorizationEngine(store.snapshot())
    try:
        return engine.validate_role_permission(body.user_role, body.required_role, body.operation)
    except EngineError as e:
        raise to_http_error(e)


@router.post("/refresh", response_model=RoleRefreshResponse)
@limiter.limit(RATE_MUTATIONS)
async def refresh_roles(
    request: Request,
    actor: Actor = Depends(require_permission(MANAGE_SYSTEM)),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """Reload the role hierarchy from the provider."""
    try:
        hierarchy = await store.load()
    except EngineError as e:
        logger.error("Role refresh requested by %s failed: %s", actor.id, e.detail)
        raise to_http_error(e)

    report = hierarchy.validate_metadata()
    for warning in report.warnings:
        logger.debug("Role metadata: %s", warning)
    if report.errors:
        logger.warning("Role metadata incomplete: %d error(s)", len(report.errors))
    logger.info("Role hierarchy refreshed by %s", actor.id)
    return RoleRefreshResponse.build(len(hierarchy.roles), hierarchy.owner.name, report)


@router.get("/{name}/metadata", response_model=RoleMetadataResponse)
@limiter.limit(RATE_READ)
async def get_role_metadata(
    request: Request,
    name: str,
    actor: Actor = Depends(get_current_actor),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """Display metadata for a role and each of its permissions.

    Permissions without metadata are returned as null.
    """
    hierarchy = store.snapshot()
    try:
        role = hierarchy.get_role(name)
        meta = hierarchy.get_role_metadata(name)
    except EngineError as e:
        raise to_http_error(e)

    permissions = {}
    for permission in sorted(role.permissions):
        try:
            permissions[permission] = hierarchy.get_permission_metadata(permission)
        except MissingMetadata:
            permissions[permission] = None
    return RoleMetadataResponse.build(name, meta, permissions)
