"""Shared test fixtures for backend tests.

Provides:
- Role hierarchy payload (owner / admin / moderator / user) and a static provider
- In-memory UserStore and AuditRecorder fakes
- FastAPI test app wired to the fakes, httpx AsyncClient per actor
- Environment variable setup
"""
import asyncio
import os
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set

import pytest
import pytest_asyncio

# Set required environment variables BEFORE any app imports
os.environ.setdefault("API_BASE_URL", "http://localhost:3000")
os.environ.setdefault("WEB_DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("AUDIT_API_PATH", "")

# Clear the lru_cache so test env vars take effect
from dojo_console.backend.core.config import get_web_settings
get_web_settings.cache_clear()

from httpx import ASGITransport, AsyncClient
from dojo_console.backend.core.audit import AuditEntry, AuditRecorder
from dojo_console.backend.core.bulk import BulkLimits
from dojo_console.backend.core.errors import NotFound
from dojo_console.backend.core.manager import BulkOperationManager
from dojo_console.backend.core.rbac import Actor
from dojo_console.backend.core.roles import RoleHierarchyStore, RoleProvider
from dojo_console.backend.core.user_store import TargetUser, UserStore
from dojo_console.backend.main import create_app


# ── Role hierarchy ────────────────────────────────────────────

OWNER_PERMISSIONS = [
    "view_all_users", "create_users", "edit_all_users", "delete_users",
    "change_all_roles", "change_admin_and_below_roles", "edit_user_role_only",
    "change_user_role_only", "view_audit_logs", "manage_system",
    "bulk_operations", "view_own_profile", "edit_own_profile",
]

ADMIN_PERMISSIONS = [
    "view_all_users", "create_users", "edit_all_users", "delete_users",
    "change_admin_and_below_roles", "view_audit_logs", "manage_system",
    "bulk_operations", "view_own_profile", "edit_own_profile",
]

MODERATOR_PERMISSIONS = [
    "view_all_users", "edit_user_role_only", "change_user_role_only",
    "view_own_profile", "edit_own_profile",
]

USER_PERMISSIONS = ["view_own_profile", "edit_own_profile"]


def make_role_payload() -> dict:
    """Fresh copy of the standard four-role hierarchy."""
    return {
        "roles": [
            {"name": "owner", "level": 99999, "permissions": list(OWNER_PERMISSIONS)},
            {"name": "admin", "level": 9000, "permissions": list(ADMIN_PERMISSIONS)},
            {"name": "moderator", "level": 5000, "permissions": list(MODERATOR_PERMISSIONS)},
            {"name": "user", "level": 100, "permissions": list(USER_PERMISSIONS)},
        ],
        "role_metadata": {
            "owner": {"display_name": "Owner", "description": "Full control",
                      "icon": "crown", "color": "purple", "can_be_assigned_via_ui": False},
            "admin": {"display_name": "Administrator", "description": "Manages users",
                      "icon": "shield", "color": "red"},
            "moderator": {"display_name": "Moderator", "description": "Moderates content",
                          "icon": "gavel", "color": "blue"},
            "user": {"display_name": "User", "description": "Learner", "icon": "person"},
        },
        "permission_metadata": {
            p: {"display_name": p.replace("_", " ").title(), "description": p, "category": "users"}
            for p in OWNER_PERMISSIONS
        },
    }


class StaticRoleProvider(RoleProvider):
    """Serves a fixed payload; can be gated, made to fail, or swapped."""

    def __init__(self, payload: Optional[dict] = None):
        self.payload = payload if payload is not None else make_role_payload()
        self.calls = 0
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def fetch_roles(self) -> dict:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.payload


# ── User store / audit fakes ──────────────────────────────────

class FakeUserStore(UserStore):
    """In-memory user store.

    ``failures`` maps user id -> exception raised by any mutation of that user.
    ``gates`` maps user id -> asyncio.Event that the mutation waits on.
    """

    def __init__(self, users: Dict[str, TargetUser]):
        self.users = dict(users)
        self.failures: Dict[str, Exception] = {}
        self.get_failures: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.delay = 0.0
        self.mutations: List[tuple] = []
        self.in_progress: Set[str] = set()
        self.overlaps = 0
        self.active = 0
        self.max_active = 0

    async def get_user(self, user_id: str) -> TargetUser:
        if user_id in self.get_failures:
            raise self.get_failures[user_id]
        user = self.users.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    async def _mutate(self, op: str, user_id: str, **changes) -> None:
        if user_id in self.in_progress:
            self.overlaps += 1
        self.in_progress.add(user_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            gate = self.gates.get(user_id)
            if gate is not None:
                await gate.wait()
            if user_id in self.failures:
                raise self.failures[user_id]
            self.mutations.append((op, user_id))
            if op == "delete":
                self.users.pop(user_id, None)
            else:
                self.users[user_id] = replace(self.users[user_id], **changes)
        finally:
            self.active -= 1
            self.in_progress.discard(user_id)

    async def activate(self, user_id: str) -> None:
        await self._mutate("activate", user_id, active=True)

    async def deactivate(self, user_id: str) -> None:
        await self._mutate("deactivate", user_id, active=False)

    async def set_role(self, user_id: str, role: str, reason: Optional[str] = None) -> None:
        await self._mutate("set_role", user_id, role=role)

    async def delete(self, user_id: str, reason: str) -> None:
        await self._mutate("delete", user_id)


class FakeAuditRecorder(AuditRecorder):
    def __init__(self):
        self.entries: List[AuditEntry] = []
        self.error: Optional[Exception] = None
        self.on_append: Optional[Callable[[AuditEntry], None]] = None

    async def append(self, entry: AuditEntry) -> None:
        if self.error is not None:
            raise self.error
        self.entries.append(entry)
        if self.on_append is not None:
            self.on_append(entry)


def make_users() -> Dict[str, TargetUser]:
    users = {
        "owner1": TargetUser(id="owner1", role="owner", active=True),
        "admin1": TargetUser(id="admin1", role="admin", active=True),
        "admin2": TargetUser(id="admin2", role="admin", active=True),
        "mod1": TargetUser(id="mod1", role="moderator", active=True),
    }
    for i in range(1, 11):
        users[f"u{i}"] = TargetUser(id=f"u{i}", role="user", active=True)
    return users


# ── Engine fixtures ───────────────────────────────────────────

@pytest.fixture()
def role_provider():
    return StaticRoleProvider()


@pytest_asyncio.fixture()
async def role_store(role_provider):
    store = RoleHierarchyStore(role_provider, owner_role_name="owner")
    await store.load()
    return store


@pytest.fixture()
def user_store():
    return FakeUserStore(make_users())


@pytest.fixture()
def audit():
    return FakeAuditRecorder()


@pytest.fixture()
def limits():
    return BulkLimits(max_batch_size=100, workers=5, item_timeout=1.0, audit_timeout=1.0)


def make_actor(store: RoleHierarchyStore, actor_id: str, role_name: str) -> Actor:
    return Actor(id=actor_id, role=store.get_role(role_name))


@pytest.fixture()
def owner(role_store):
    return make_actor(role_store, "owner1", "owner")


@pytest.fixture()
def admin(role_store):
    return make_actor(role_store, "admin1", "admin")


@pytest.fixture()
def moderator(role_store):
    return make_actor(role_store, "mod1", "moderator")


@pytest.fixture()
def bulk_manager(role_store, user_store, audit, limits):
    return BulkOperationManager(
        roles=role_store, user_store=user_store, audit=audit, limits=limits, max_retained=50,
    )


# ── App and client fixtures ──────────────────────────────────

@pytest.fixture()
def app(role_store, bulk_manager):
    """Create a fresh FastAPI app wired to the in-memory fakes."""
    get_web_settings.cache_clear()
    _app = create_app()
    _app.state.role_store = role_store
    _app.state.bulk_manager = bulk_manager
    yield _app
    _app.dependency_overrides.clear()


def actor_headers(actor_id: str, role: str) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


@pytest_asyncio.fixture()
async def anon_client(app):
    """HTTP client without actor headers."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def owner_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=actor_headers("owner1", "owner"),
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def admin_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=actor_headers("admin1", "admin"),
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def moderator_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=actor_headers("mod1", "moderator"),
    ) as ac:
        yield ac
