"""Core module for the admin console backend."""
from dojo_console.backend.core.config import get_web_settings, WebSettings
from dojo_console.backend.core.rbac import Actor, AuthorizationEngine, BulkOperationKind
from dojo_console.backend.core.roles import Role, RoleHierarchy, RoleHierarchyStore

__all__ = [
    "get_web_settings",
    "WebSettings",
    "Actor",
    "AuthorizationEngine",
    "BulkOperationKind",
    "Role",
    "RoleHierarchy",
    "RoleHierarchyStore",
]
