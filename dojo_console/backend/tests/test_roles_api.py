"""Tests for role hierarchy endpoints: /api/v2/roles/*."""
import pytest

from .conftest import make_role_payload


def error_code(resp) -> str:
    return resp.json()["detail"]["code"]


class TestListRoles:

    @pytest.mark.asyncio
    async def test_list_highest_first(self, moderator_client):
        resp = await moderator_client.get("/api/v2/roles")
        assert resp.status_code == 200
        data = resp.json()
        assert data["owner"] == "owner"
        assert [r["name"] for r in data["roles"]] == ["owner", "admin", "moderator", "user"]
        assert [r["is_owner"] for r in data["roles"]] == [True, False, False, False]

    @pytest.mark.asyncio
    async def test_requires_actor(self, anon_client):
        resp = await anon_client.get("/api/v2/roles")
        assert resp.status_code == 401


class TestManageableRoles:

    async def _check(self, client, expected):
        resp = await client.get("/api/v2/roles/manageable")
        assert resp.status_code == 200
        data = resp.json()
        assert data["manageable_roles"] == expected
        assert [r["name"] for r in data["detailed_roles"]] == expected

    @pytest.mark.asyncio
    async def test_owner(self, owner_client):
        await self._check(owner_client, ["admin", "moderator", "user"])

    @pytest.mark.asyncio
    async def test_admin(self, admin_client):
        await self._check(admin_client, ["moderator", "user"])

    @pytest.mark.asyncio
    async def test_moderator(self, moderator_client):
        await self._check(moderator_client, ["user"])


class TestEffectivePermissions:

    @pytest.mark.asyncio
    async def test_admin(self, admin_client):
        resp = await admin_client.get("/api/v2/roles/effective-permissions")
        assert resp.status_code == 200
        data = resp.json()
        assert data["user_id"] == "admin1"
        assert data["role_level"] == 9000
        assert data["can_manage_roles"] == ["moderator", "user"]
        flags = data["effective_permissions"]
        assert flags["can_bulk_operations"] is True
        assert flags["can_change_roles"] is True
        assert flags["can_manage_system"] is True

    @pytest.mark.asyncio
    async def test_moderator(self, moderator_client):
        resp = await moderator_client.get("/api/v2/roles/effective-permissions")
        flags = resp.json()["effective_permissions"]
        assert flags["can_bulk_operations"] is False
        assert flags["can_change_roles"] is True
        assert flags["can_delete_users"] is False


class TestValidateRolePermission:

    @pytest.mark.asyncio
    async def test_allowed(self, admin_client):
        resp = await admin_client.post("/api/v2/roles/validate", json={
            "user_role": "admin", "required_role": "moderator", "operation": "bulk_operations",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["has_permission"] is True
        assert data["validation_details"] == {
            "user_role_level": 9000, "required_role_level": 5000,
        }

    @pytest.mark.asyncio
    async def test_level_too_low(self, admin_client):
        resp = await admin_client.post("/api/v2/roles/validate", json={
            "user_role": "moderator", "required_role": "admin", "operation": "view_all_users",
        })
        assert resp.json()["has_permission"] is False

    @pytest.mark.asyncio
    async def test_bulk_kind_as_operation(self, admin_client):
        resp = await admin_client.post("/api/v2/roles/validate", json={
            "user_role": "moderator", "required_role": "user", "operation": "deactivate",
        })
        assert resp.json()["has_permission"] is False

    @pytest.mark.asyncio
    async def test_unknown_role(self, admin_client):
        resp = await admin_client.post("/api/v2/roles/validate", json={
            "user_role": "wizard", "required_role": "user", "operation": "view_all_users",
        })
        assert resp.status_code == 404
        assert error_code(resp) == "ROLE_NOT_FOUND"


class TestRefreshRoles:

    @pytest.mark.asyncio
    async def test_requires_manage_system(self, moderator_client):
        resp = await moderator_client.post("/api/v2/roles/refresh")
        assert resp.status_code == 403
        assert resp.json()["detail"]["detail"] == "Permission denied: manage_system"

    @pytest.mark.asyncio
    async def test_refresh_reports_metadata(self, admin_client, role_provider):
        calls_before = role_provider.calls
        resp = await admin_client.post("/api/v2/roles/refresh")
        assert resp.status_code == 200
        data = resp.json()
        assert data["roles"] == 4
        assert data["owner"] == "owner"
        assert data["metadata_errors"] == []
        assert "Missing color for role: user" in data["metadata_warnings"]
        assert role_provider.calls == calls_before + 1

    @pytest.mark.asyncio
    async def test_refresh_picks_up_new_roles(self, admin_client, role_provider):
        payload = make_role_payload()
        payload["roles"].append({"name": "mentor", "level": 3000, "permissions": ["view_all_users"]})
        role_provider.payload = payload

        resp = await admin_client.post("/api/v2/roles/refresh")
        assert resp.json()["metadata_errors"] == ["Missing metadata for role: mentor"]

        resp = await admin_client.get("/api/v2/roles/manageable")
        assert resp.json()["manageable_roles"] == ["moderator", "mentor", "user"]

    @pytest.mark.asyncio
    async def test_refresh_failure(self, admin_client, role_provider):
        role_provider.error = RuntimeError("roles service down")
        resp = await admin_client.post("/api/v2/roles/refresh")
        assert resp.status_code == 503
        assert error_code(resp) == "FETCH_ERROR"


class TestRoleMetadata:

    @pytest.mark.asyncio
    async def test_metadata(self, moderator_client):
        resp = await moderator_client.get("/api/v2/roles/admin/metadata")
        assert resp.status_code == 200
        data = resp.json()
        assert data["role"] == "admin"
        assert data["display_name"] == "Administrator"
        assert data["can_be_assigned_via_ui"] is True
        assert data["permissions"]["bulk_operations"]["display_name"] == "Bulk Operations"

    @pytest.mark.asyncio
    async def test_owner_not_assignable_via_ui(self, moderator_client):
        resp = await moderator_client.get("/api/v2/roles/owner/metadata")
        assert resp.json()["can_be_assigned_via_ui"] is False

    @pytest.mark.asyncio
    async def test_missing_permission_metadata_is_null(self, admin_client, role_provider):
        payload = make_role_payload()
        del payload["permission_metadata"]["view_own_profile"]
        role_provider.payload = payload
        await admin_client.post("/api/v2/roles/refresh")

        resp = await admin_client.get("/api/v2/roles/user/metadata")
        assert resp.status_code == 200
        assert resp.json()["permissions"]["view_own_profile"] is None

    @pytest.mark.asyncio
    async def test_missing_role_metadata(self, admin_client, role_provider):
        payload = make_role_payload()
        del payload["role_metadata"]["moderator"]
        role_provider.payload = payload
        await admin_client.post("/api/v2/roles/refresh")

        resp = await admin_client.get("/api/v2/roles/moderator/metadata")
        assert resp.status_code == 404
        assert error_code(resp) == "MISSING_METADATA"

    @pytest.mark.asyncio
    async def test_unknown_role(self, admin_client):
        resp = await admin_client.get("/api/v2/roles/wizard/metadata")
        assert resp.status_code == 404
        assert error_code(resp) == "ROLE_NOT_FOUND"
