"""Schemas for the role hierarchy API."""
from typing import Dict, List, Optional

from pydantic import BaseModel

from dojo_console.backend.core.roles import (
    MetadataReport,
    PermissionMetadata,
    Role,
    RoleMetadata,
)


class RoleItem(BaseModel):
    name: str
    level: int
    permissions: List[str] = []
    is_owner: bool = False

    @classmethod
    def from_role(cls, role: Role, is_owner: bool = False) -> "RoleItem":
        return cls(
            name=role.name,
            level=role.level,
            permissions=sorted(role.permissions),
            is_owner=is_owner,
        )


class RoleListResponse(BaseModel):
    roles: List[RoleItem]
    owner: str


class ManageableRolesResponse(BaseModel):
    current_user_role: str
    manageable_roles: List[str]
    detailed_roles: List[RoleItem] = []


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    role: str
    role_level: int
    permissions: List[str]
    can_manage_roles: List[str]
    effective_permissions: Dict[str, bool]


class ValidateRolePermissionRequest(BaseModel):
    user_role: str
    required_role: str
    operation: str


class ValidationDetails(BaseModel):
    user_role_level: int
    required_role_level: int


class ValidateRolePermissionResponse(BaseModel):
    user_role: str
    required_role: str
    operation: str
    has_permission: bool
    validation_details: ValidationDetails


class RoleMetadataResponse(BaseModel):
    role: str
    display_name: str = ""
    description: str = ""
    icon: str = ""
    color: str = ""
    can_be_assigned_via_ui: bool = True
    permissions: Dict[str, Optional[dict]] = {}

    @classmethod
    def build(
        cls,
        name: str,
        meta: RoleMetadata,
        permissions: Dict[str, Optional[PermissionMetadata]],
    ) -> "RoleMetadataResponse":
        return cls(
            role=name,
            display_name=meta.display_name,
            description=meta.description,
            icon=meta.icon,
            color=meta.color,
            can_be_assigned_via_ui=meta.can_be_assigned_via_ui,
            permissions={
                p: (None if m is None else {
                    "display_name": m.display_name,
                    "description": m.description,
                    "category": m.category,
                })
                for p, m in permissions.items()
            },
        )


class RoleRefreshResponse(BaseModel):
    roles: int
    owner: str
    metadata_errors: List[str] = []
    metadata_warnings: List[str] = []

    @classmethod
    def build(cls, roles: int, owner: str, report: MetadataReport) -> "RoleRefreshResponse":
        return cls(
            roles=roles,
            owner=owner,
            metadata_errors=list(report.errors),
            metadata_warnings=list(report.warnings),
        )
