"""Schemas for the admin console API."""
from dojo_console.backend.schemas.common import HealthResponse
from dojo_console.backend.schemas.bulk import (
    BulkOperationCreate,
    BulkItemError,
    BulkOperationAccepted,
    BulkOperationProgressResponse,
    BulkOperationResultResponse,
    BulkCancelResponse,
)
from dojo_console.backend.schemas.role import (
    RoleItem,
    RoleListResponse,
    ManageableRolesResponse,
    EffectivePermissionsResponse,
    ValidateRolePermissionRequest,
    ValidateRolePermissionResponse,
    RoleMetadataResponse,
    RoleRefreshResponse,
)

__all__ = [
    # Common
    "HealthResponse",
    # Bulk
    "BulkOperationCreate",
    "BulkItemError",
    "BulkOperationAccepted",
    "BulkOperationProgressResponse",
    "BulkOperationResultResponse",
    "BulkCancelResponse",
    # Roles
    "RoleItem",
    "RoleListResponse",
    "ManageableRolesResponse",
    "EffectivePermissionsResponse",
    "ValidateRolePermissionRequest",
    "ValidateRolePermissionResponse",
    "RoleMetadataResponse",
    "RoleRefreshResponse",
]
