"""Role hierarchy store.

Provides:
- Immutable ``Role`` / ``RoleHierarchy`` snapshot types
- Parsing and validation of the provider payload
- ``RoleHierarchyStore``: cached snapshot with single-flight refresh
- Typed role / permission display metadata lookups
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import httpx

from dojo_console.backend.core.api_helper import get_client, unwrap
from dojo_console.backend.core.errors import (
    FetchError,
    MissingMetadata,
    RoleHierarchyNotLoaded,
    RoleNotFound,
)

logger = logging.getLogger(__name__)


# ── Snapshot types ──────────────────────────────────────────────

@dataclass(frozen=True)
class Role:
    """Named capability bundle with a strict ordering level."""

    name: str
    level: int
    permissions: FrozenSet[str] = frozenset()

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class RoleMetadata:
    display_name: str = ""
    description: str = ""
    icon: str = ""
    color: str = ""
    can_be_assigned_via_ui: bool = True


@dataclass(frozen=True)
class PermissionMetadata:
    display_name: str = ""
    description: str = ""
    category: str = ""


@dataclass(frozen=True)
class MetadataReport:
    """Outcome of checking that every role and permission has display metadata."""

    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RoleHierarchy:
    """One immutable snapshot of the role model."""

    roles: Mapping[str, Role]
    owner: Role
    role_metadata: Mapping[str, RoleMetadata] = field(default_factory=lambda: MappingProxyType({}))
    permission_metadata: Mapping[str, PermissionMetadata] = field(
        default_factory=lambda: MappingProxyType({})
    )
    loaded_at: float = 0.0

    def get_role(self, name: str) -> Role:
        role = self.roles.get(name)
        if role is None:
            raise RoleNotFound(f"Unknown role: {name}")
        return role

    def resolve(self, role: Union[Role, str]) -> Role:
        return self.get_role(role) if isinstance(role, str) else role

    def level(self, role: Union[Role, str]) -> int:
        return self.resolve(role).level

    def permissions(self, role: Union[Role, str]) -> FrozenSet[str]:
        return self.resolve(role).permissions

    def is_owner(self, role: Union[Role, str, None]) -> bool:
        if role is None:
            return False
        name = role if isinstance(role, str) else role.name
        return name == self.owner.name

    def ordered(self) -> List[Role]:
        """Roles from the highest level down."""
        return sorted(self.roles.values(), key=lambda r: r.level, reverse=True)

    def get_role_metadata(self, name: str) -> RoleMetadata:
        """Display metadata for a role; raises MissingMetadata if the provider sent none."""
        meta = self.role_metadata.get(name)
        if meta is None:
            raise MissingMetadata(f"Missing metadata for role: {name}")
        return meta

    def get_permission_metadata(self, permission: str) -> PermissionMetadata:
        meta = self.permission_metadata.get(permission)
        if meta is None:
            raise MissingMetadata(f"Missing metadata for permission: {permission}")
        return meta

    def validate_metadata(self) -> MetadataReport:
        errors: List[str] = []
        warnings: List[str] = []

        for role in self.ordered():
            meta = self.role_metadata.get(role.name)
            if meta is None:
                errors.append(f"Missing metadata for role: {role.name}")
                continue
            for attr in ("display_name", "description", "icon", "color"):
                if not getattr(meta, attr):
                    warnings.append(f"Missing {attr} for role: {role.name}")

        all_permissions = sorted({p for r in self.roles.values() for p in r.permissions})
        for permission in all_permissions:
            meta = self.permission_metadata.get(permission)
            if meta is None:
                errors.append(f"Missing metadata for permission: {permission}")
                continue
            for attr in ("display_name", "description", "category"):
                if not getattr(meta, attr):
                    warnings.append(f"Missing {attr} for permission: {permission}")

        return MetadataReport(errors=tuple(errors), warnings=tuple(warnings))


# ── Payload parsing ─────────────────────────────────────────────

def _parse_role(item: Any) -> Role:
    if not isinstance(item, dict):
        raise FetchError(f"Role entry must be an object, got {type(item).__name__}")
    name = item.get("name")
    level = item.get("level")
    permissions = item.get("permissions") or []
    if not isinstance(name, str) or not name:
        raise FetchError("Role entry without a name")
    if isinstance(level, bool) or not isinstance(level, int):
        raise FetchError(f"Role {name!r} has a non-integer level")
    if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
        raise FetchError(f"Role {name!r} has malformed permissions")
    return Role(name=name, level=level, permissions=frozenset(permissions))


def _parse_metadata(raw: Any, cls) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    result = {}
    allowed = cls.__dataclass_fields__.keys()
    for key, value in raw.items():
        if isinstance(value, dict):
            result[key] = cls(**{k: v for k, v in value.items() if k in allowed})
    return result


def parse_role_hierarchy(payload: Any, owner_role_name: str = "owner") -> RoleHierarchy:
    """Build a validated snapshot from a provider payload.

    Raises FetchError when the payload is malformed or violates the
    hierarchy rules: unique names, unique levels, owner strictly on top.
    """
    if not isinstance(payload, dict):
        raise FetchError("Role hierarchy payload must be an object")
    # Platform API wraps bodies in {"response": ...}
    payload = payload.get("response", payload)
    raw_roles = payload.get("roles") if isinstance(payload, dict) else None
    if not isinstance(raw_roles, list) or not raw_roles:
        raise FetchError("No roles found in role hierarchy payload")

    roles: Dict[str, Role] = {}
    levels: Dict[int, str] = {}
    for item in raw_roles:
        role = _parse_role(item)
        if role.name in roles:
            raise FetchError(f"Duplicate role name: {role.name}")
        if role.level in levels:
            raise FetchError(
                f"Roles {levels[role.level]!r} and {role.name!r} share level {role.level}"
            )
        roles[role.name] = role
        levels[role.level] = role.name

    owner = roles.get(owner_role_name)
    if owner is None:
        raise FetchError(f"Owner role {owner_role_name!r} missing from role hierarchy")
    if owner.level != max(levels):
        raise FetchError(f"Owner role {owner_role_name!r} is not the highest level")

    return RoleHierarchy(
        roles=MappingProxyType(roles),
        owner=owner,
        role_metadata=MappingProxyType(_parse_metadata(payload.get("role_metadata"), RoleMetadata)),
        permission_metadata=MappingProxyType(
            _parse_metadata(payload.get("permission_metadata"), PermissionMetadata)
        ),
        loaded_at=time.monotonic(),
    )


# ── Providers ───────────────────────────────────────────────────

class RoleProvider(ABC):
    """Source of the raw role hierarchy payload."""

    @abstractmethod
    async def fetch_roles(self) -> Dict[str, Any]:
        """Return ``{"roles": [{name, level, permissions[]}], ...}``."""


class HttpRoleProvider(RoleProvider):
    """Fetch the role hierarchy from the platform API."""

    def __init__(self, path: str = "/api/v1/roles", client: Optional[httpx.AsyncClient] = None):
        self._path = path
        self._client = client

    async def fetch_roles(self) -> Dict[str, Any]:
        client = self._client or get_client()
        try:
            resp = await client.get(self._path)
            resp.raise_for_status()
            return unwrap(resp.json())
        except httpx.HTTPError as e:
            raise FetchError(f"Role hierarchy fetch failed: {e}") from e
        except ValueError as e:
            raise FetchError(f"Role hierarchy response is not JSON: {e}") from e


# ── Store ───────────────────────────────────────────────────────

class RoleHierarchyStore:
    """Cached role hierarchy with single-flight, atomic-swap refresh."""

    def __init__(
        self,
        provider: RoleProvider,
        owner_role_name: str = "owner",
        refresh_seconds: int = 0,
    ):
        self._provider = provider
        self._owner_role_name = owner_role_name
        self._refresh_seconds = refresh_seconds
        self._snapshot: Optional[RoleHierarchy] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    def snapshot(self) -> RoleHierarchy:
        if self._snapshot is None:
            raise RoleHierarchyNotLoaded("Role hierarchy has not been loaded yet")
        return self._snapshot

    async def load(self) -> RoleHierarchy:
        """Fetch and swap in a fresh snapshot; concurrent callers share one fetch."""
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch_and_swap())
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    async def ensure_loaded(self) -> RoleHierarchy:
        """Load if nothing is cached or the refresh interval has passed.

        A failed periodic refresh keeps serving the previous snapshot.
        """
        current = self._snapshot
        if current is None:
            return await self.load()
        if self._refresh_seconds and time.monotonic() - current.loaded_at >= self._refresh_seconds:
            try:
                return await self.load()
            except FetchError as e:
                logger.warning("Role hierarchy refresh failed, keeping cached snapshot: %s", e)
        return current

    def get_role(self, name: str) -> Role:
        return self.snapshot().get_role(name)

    def level(self, role: Union[Role, str]) -> int:
        return self.snapshot().level(role)

    def permissions(self, role: Union[Role, str]) -> FrozenSet[str]:
        return self.snapshot().permissions(role)

    async def _fetch_and_swap(self) -> RoleHierarchy:
        try:
            payload = await self._provider.fetch_roles()
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(f"Role provider unreachable: {e}") from e
        hierarchy = parse_role_hierarchy(payload, self._owner_role_name)
        self._snapshot = hierarchy
        logger.info(
            "Role hierarchy loaded: %d roles, owner=%s",
            len(hierarchy.roles), hierarchy.owner.name,
        )
        return hierarchy

    def _clear_inflight(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        if not future.cancelled():
            # Mark the exception retrieved; awaiting callers already received it
            future.exception()
