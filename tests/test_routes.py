"""
HTTP tests for the session exchange and the authorization API.
"""
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from app.core import config
from app.core.errors import EvaluatorUnavailable
from app.features.permissions.audit import SYSTEM
from app.features.permissions.keys import PermissionKey
from app.features.permissions.lifecycle import assign_role, create_permission, create_role, replace_role_permissions
from app.features.principals.models import PrincipalStatus
from app.features.sessions.store import IdentityStoreUnavailable, InvalidSession
from tests.conftest import get_permission_id, get_role_by_name


@pytest_asyncio.fixture
async def viewer(seeded, make_principal):
    principal = await make_principal("vera")
    role = await get_role_by_name(seeded, "viewer")
    await assign_role(seeded, principal.id, role.id, SYSTEM)
    return principal


@pytest.fixture
def as_admin(admin, auth_headers) -> dict:
    return auth_headers(admin)


# ==================== Service endpoints ====================


async def test_health(async_client):
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_root(async_client):
    response = await async_client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "online"


# ==================== Session exchange ====================


class TestSessionExchange:
    @staticmethod
    def identity(user_id: str, email: str = None, name: str = "", error: Exception = None):
        verify = patch("app.features.sessions.routes.verify_identity_token", return_value=user_id)
        if error is not None:
            fetch = patch("app.features.sessions.routes.get_identity_user", AsyncMock(side_effect=error))
        else:
            fetch = patch(
                "app.features.sessions.routes.get_identity_user",
                AsyncMock(return_value={"$id": user_id, "email": email, "name": name, "status": True}),
            )
        return verify, fetch

    async def test_first_login_bootstraps_admin(self, async_client, seeded):
        verify, fetch = self.identity("appwrite-1", "first@example.com", "First")
        with verify, fetch:
            response = await async_client.post("/auth/session", json={"token": "identity-jwt"})

        assert response.status_code == 200
        body = response.json()
        assert body["bootstrapped_admin"] is True
        assert body["principal"]["email"] == "first@example.com"
        assert body["expires_in"] == config.SESSION_TTL_SECONDS
        token = response.cookies.get(config.SESSION_COOKIE_NAME)
        assert token

        checked = await async_client.post(
            "/check",
            json={"permissions": ["user_management:roles:delete"]},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert checked.json() == {"results": {"user_management:roles:delete": True}}

    async def test_later_logins_are_not_elevated(self, async_client, admin):
        verify, fetch = self.identity("appwrite-2", "second@example.com")
        with verify, fetch:
            response = await async_client.post("/auth/session", json={"token": "identity-jwt"})

        assert response.status_code == 200
        assert response.json()["bootstrapped_admin"] is False

    async def test_bad_identity_token(self, async_client, seeded):
        with patch(
            "app.features.sessions.routes.verify_identity_token", side_effect=InvalidSession("Invalid identity token")
        ):
            response = await async_client.post("/auth/session", json={"token": "garbage"})

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    async def test_identity_provider_down(self, async_client, seeded):
        verify, fetch = self.identity("appwrite-1", error=IdentityStoreUnavailable("down"))
        with verify, fetch:
            response = await async_client.post("/auth/session", json={"token": "identity-jwt"})

        assert response.status_code == 401

    async def test_identity_without_email(self, async_client, seeded):
        verify, fetch = self.identity("appwrite-1", email=None)
        with verify, fetch:
            response = await async_client.post("/auth/session", json={"token": "identity-jwt"})

        assert response.status_code == 401

    async def test_inactive_principal_cannot_sign_in(self, async_client, seeded, make_principal):
        await make_principal("olga", status=PrincipalStatus.INACTIVE)
        verify, fetch = self.identity("identity-olga", "olga@example.com")
        with verify, fetch:
            response = await async_client.post("/auth/session", json={"token": "identity-jwt"})

        assert response.status_code == 403

    async def test_logout_clears_cookie(self, async_client):
        response = await async_client.post("/auth/logout")

        assert response.status_code == 200
        assert config.SESSION_COOKIE_NAME in response.headers["set-cookie"]


# ==================== Roles ====================


class TestRoleRoutes:
    async def test_role_lifecycle(self, async_client, seeded, as_admin):
        response = await async_client.post(
            "/roles",
            json={"name": "content_editor", "display_name": "Content Editor", "module": "user_management", "priority": 50},
            headers=as_admin,
        )
        assert response.status_code == 201
        role = response.json()
        assert role["module"] == "user_management"
        assert role["permissions"] == []

        read_id = await get_permission_id(seeded, "user_management", "users", "read")
        response = await async_client.put(
            f"/roles/{role['id']}/permissions", json={"permission_ids": [read_id]}, headers=as_admin
        )
        assert response.status_code == 200
        assert [p["key"] for p in response.json()["permissions"]] == ["user_management:users:read"]

        response = await async_client.patch(
            f"/roles/{role['id']}", json={"display_name": "Editor", "description": None}, headers=as_admin
        )
        assert response.status_code == 200
        assert response.json()["display_name"] == "Editor"

        response = await async_client.get(f"/roles/{role['id']}", headers=as_admin)
        assert response.status_code == 200
        assert len(response.json()["permissions"]) == 1

        response = await async_client.post(
            f"/roles/{role['id']}/duplicate", json={"name": "content_editor_2"}, headers=as_admin
        )
        assert response.status_code == 201
        assert response.json()["display_name"] == "Editor (Copy)"

        response = await async_client.delete(f"/roles/{role['id']}", headers=as_admin)
        assert response.status_code == 204

        response = await async_client.get(f"/roles/{role['id']}", headers=as_admin)
        assert response.status_code == 404

    async def test_list_global_roles(self, async_client, as_admin):
        response = await async_client.get("/roles", params={"module": "global"}, headers=as_admin)

        assert response.status_code == 200
        assert [r["name"] for r in response.json()] == ["super_admin", "viewer"]

    async def test_viewer_cannot_create(self, async_client, viewer, auth_headers):
        assert (await async_client.get("/roles", headers=auth_headers(viewer))).status_code == 200

        response = await async_client.post(
            "/roles", json={"name": "sneaky", "display_name": "Sneaky"}, headers=auth_headers(viewer)
        )

        assert response.status_code == 403
        assert response.json() == {"error": "forbidden", "detail": "Not permitted"}

    async def test_duplicate_name(self, async_client, as_admin):
        response = await async_client.post("/roles", json={"name": "viewer", "display_name": "V"}, headers=as_admin)

        assert response.status_code == 409
        assert response.json()["count"] == 1

    async def test_bad_role_name_is_a_validation_error(self, async_client, as_admin):
        response = await async_client.post("/roles", json={"name": "Bad-Name", "display_name": "B"}, headers=as_admin)

        assert response.status_code == 400
        assert "name" in response.json()

    async def test_system_role_is_locked(self, async_client, seeded, as_admin):
        super_admin = await get_role_by_name(seeded, "super_admin")

        patched = await async_client.patch(f"/roles/{super_admin.id}", json={"priority": 1}, headers=as_admin)
        deleted = await async_client.delete(f"/roles/{super_admin.id}", headers=as_admin)
        emptied = await async_client.put(
            f"/roles/{super_admin.id}/permissions", json={"permission_ids": []}, headers=as_admin
        )

        assert patched.status_code == 403
        assert deleted.status_code == 403
        assert emptied.status_code == 403

    async def test_delete_held_role_reports_count(self, async_client, seeded, as_admin, make_principal):
        created = await async_client.post("/roles", json={"name": "clerk", "display_name": "Clerk"}, headers=as_admin)
        role_id = created.json()["id"]
        for _ in range(2):
            principal = await make_principal()
            response = await async_client.post(
                "/assignments", json={"principal_id": principal.id, "role_id": role_id}, headers=as_admin
            )
            assert response.status_code == 200

        response = await async_client.delete(f"/roles/{role_id}", headers=as_admin)

        assert response.status_code == 409
        assert response.json()["count"] == 2

        holders = await async_client.get(f"/roles/{role_id}/principals", headers=as_admin)
        assert len(holders.json()) == 2

    async def test_role_holders_need_roles_read_or_users_list(
        self, async_client, seeded, admin, viewer, as_admin, make_principal, auth_headers
    ):
        directory = await async_client.post(
            "/roles", json={"name": "directory", "display_name": "Directory"}, headers=as_admin
        )
        list_id = await get_permission_id(seeded, "user_management", "users", "list")
        await async_client.put(
            f"/roles/{directory.json()['id']}/permissions", json={"permission_ids": [list_id]}, headers=as_admin
        )
        lister = await make_principal("lou")
        await async_client.post(
            "/assignments", json={"principal_id": lister.id, "role_id": directory.json()["id"]}, headers=as_admin
        )
        outsider = await make_principal("oz")
        super_admin = await get_role_by_name(seeded, "super_admin")
        path = f"/roles/{super_admin.id}/principals"

        by_viewer = await async_client.get(path, headers=auth_headers(viewer))
        by_lister = await async_client.get(path, headers=auth_headers(lister))
        by_outsider = await async_client.get(path, headers=auth_headers(outsider))

        assert by_viewer.status_code == 200
        assert [holder["principal"]["id"] for holder in by_viewer.json()] == [admin.id]
        assert by_lister.status_code == 200
        assert by_outsider.status_code == 403

    async def test_empty_update(self, async_client, as_admin):
        created = await async_client.post("/roles", json={"name": "clerk", "display_name": "Clerk"}, headers=as_admin)

        response = await async_client.patch(f"/roles/{created.json()['id']}", json={}, headers=as_admin)

        assert response.status_code == 422


# ==================== Assignments ====================


class TestAssignmentRoutes:
    async def test_assign_and_revoke_are_idempotent(self, async_client, seeded, as_admin, make_principal):
        principal = await make_principal("pat")
        viewer_role = await get_role_by_name(seeded, "viewer")
        body = {"principal_id": principal.id, "role_id": viewer_role.id}

        first = await async_client.post("/assignments", json=body, headers=as_admin)
        again = await async_client.post("/assignments", json=body, headers=as_admin)
        assert first.json()["changed"] is True
        assert again.status_code == 200
        assert again.json()["changed"] is False

        revoked = await async_client.delete(f"/assignments/{principal.id}/{viewer_role.id}", headers=as_admin)
        revoked_again = await async_client.delete(f"/assignments/{principal.id}/{viewer_role.id}", headers=as_admin)
        assert revoked.json()["changed"] is True
        assert revoked_again.status_code == 200
        assert revoked_again.json()["changed"] is False

    async def test_unknown_principal(self, async_client, seeded, as_admin):
        viewer_role = await get_role_by_name(seeded, "viewer")

        response = await async_client.post(
            "/assignments", json={"principal_id": "missing", "role_id": viewer_role.id}, headers=as_admin
        )

        assert response.status_code == 404


# ==================== Evaluation ====================


class TestEvaluationRoutes:
    async def test_check(self, async_client, viewer, auth_headers):
        response = await async_client.post(
            "/check",
            json={"permissions": ["user_management:users:read", "user_management:users:delete"]},
            headers=auth_headers(viewer),
        )

        assert response.status_code == 200
        assert response.json()["results"] == {
            "user_management:users:read": True,
            "user_management:users:delete": False,
        }

    async def test_check_malformed_key(self, async_client, viewer, auth_headers):
        response = await async_client.post("/check", json={"permissions": ["users:read"]}, headers=auth_headers(viewer))
        assert response.status_code == 422

    async def test_my_permissions(self, async_client, viewer, auth_headers):
        response = await async_client.get("/me/permissions", headers=auth_headers(viewer))

        body = response.json()
        assert len(body["permissions"]) == 10
        assert [r["name"] for r in body["roles"]] == ["viewer"]

    async def test_my_module_access(self, async_client, viewer, auth_headers):
        allowed = await async_client.get("/me/modules/user_management", headers=auth_headers(viewer))
        denied = await async_client.get("/me/modules/hr", headers=auth_headers(viewer))

        assert allowed.json() == {"module": "user_management", "allowed": True}
        assert denied.json() == {"module": "hr", "allowed": False}

    async def test_evaluator_unavailable_is_503(self, async_client, viewer, auth_headers):
        with patch(
            "app.features.permissions.dependencies.has_permission", AsyncMock(side_effect=EvaluatorUnavailable())
        ):
            response = await async_client.get("/roles", headers=auth_headers(viewer))

        assert response.status_code == 503
        assert response.json()["error"] == "evaluator_unavailable"


# ==================== Modules, permissions, audit, principals ====================


class TestAdministrationRoutes:
    async def test_modules(self, async_client, as_admin):
        created = await async_client.post(
            "/modules", json={"name": "crm", "display_name": "CRM", "requires_employee": True}, headers=as_admin
        )
        assert created.status_code == 201

        toggled = await async_client.patch("/modules/crm", json={"is_active": False}, headers=as_admin)
        assert toggled.json()["is_active"] is False

        listed = await async_client.get("/modules", headers=as_admin)
        assert "crm" in [m["name"] for m in listed.json()]

    async def test_user_management_module_stays_on(self, async_client, as_admin):
        response = await async_client.patch("/modules/user_management", json={"is_active": False}, headers=as_admin)

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"
        checked = await async_client.post(
            "/check", json={"permissions": ["user_management:permissions:update"]}, headers=as_admin
        )
        assert checked.json() == {"results": {"user_management:permissions:update": True}}

    async def test_permissions(self, async_client, as_admin):
        created = await async_client.post(
            "/permissions", json={"module": "pos", "resource": "sales", "action": "refund"}, headers=as_admin
        )
        assert created.status_code == 201
        assert created.json()["key"] == "pos:sales:refund"

        grouped = await async_client.get("/permissions", params={"module": "pos"}, headers=as_admin)
        assert [p["key"] for p in grouped.json()[0]["permissions"]] == ["pos:sales:refund"]

        deleted = await async_client.delete(f"/permissions/{created.json()['id']}", headers=as_admin)
        assert deleted.status_code == 204

    async def test_audit_log(self, async_client, admin, as_admin):
        await async_client.post("/roles", json={"name": "clerk", "display_name": "Clerk"}, headers=as_admin)

        response = await async_client.get(
            "/audit-logs", params={"actor_id": admin.id, "action": "role_created"}, headers=as_admin
        )

        body = response.json()
        assert body["total"] == 1
        entry = body["items"][0]
        assert entry["resource_type"] == "role"
        assert entry["ip_address"] == "127.0.0.1"

    async def test_audit_log_requires_permission(self, async_client, seeded, make_principal, auth_headers):
        nobody = await make_principal("nobody")

        response = await async_client.get("/audit-logs", headers=auth_headers(nobody))

        assert response.status_code == 403

    async def test_list_principals(self, async_client, admin, viewer, as_admin):
        response = await async_client.get("/principals", params={"status": "active"}, headers=as_admin)

        assert response.json()["total"] == 2

    async def test_cannot_deactivate_self(self, async_client, admin, as_admin):
        response = await async_client.patch(
            f"/principals/{admin.id}/status", json={"status": "inactive"}, headers=as_admin
        )
        assert response.status_code == 403

    async def test_update_own_profile(self, async_client, viewer, auth_headers):
        response = await async_client.patch(
            "/principals/me", json={"display_name": "Vera V"}, headers=auth_headers(viewer)
        )

        assert response.status_code == 200
        assert response.json()["display_name"] == "Vera V"

    async def test_own_profile_cannot_set_employee_link(self, async_client, seeded, make_principal, auth_headers):
        permission = await create_permission(seeded, PermissionKey.parse("hr:records:read"), SYSTEM)
        role = await create_role(seeded, "records_reader", "Records Reader", SYSTEM, module_name="hr")
        await replace_role_permissions(seeded, role.id, [permission.id], SYSTEM)
        clerk = await make_principal("cleo")
        await assign_role(seeded, clerk.id, role.id, SYSTEM)
        headers = auth_headers(clerk)

        response = await async_client.patch("/principals/me", json={"employee_ref": "EMP-FAKE"}, headers=headers)

        assert response.status_code == 400
        assert "employee_ref" in response.json()
        assert (await async_client.get("/principals/me", headers=headers)).json()["employee_ref"] is None
        access = await async_client.get("/me/modules/hr", headers=headers)
        assert access.json() == {"module": "hr", "allowed": False}

    async def test_admin_sets_employee_link(self, async_client, seeded, as_admin, make_principal, auth_headers):
        permission = await create_permission(seeded, PermissionKey.parse("hr:records:read"), SYSTEM)
        role = await create_role(seeded, "records_reader", "Records Reader", SYSTEM, module_name="hr")
        await replace_role_permissions(seeded, role.id, [permission.id], SYSTEM)
        clerk = await make_principal("cleo")
        clerk_id = clerk.id
        await assign_role(seeded, clerk_id, role.id, SYSTEM)

        response = await async_client.patch(
            f"/principals/{clerk_id}", json={"employee_ref": "EMP-1"}, headers=as_admin
        )

        assert response.status_code == 200
        assert response.json()["employee_ref"] == "EMP-1"
        access = await async_client.get("/me/modules/hr", headers=auth_headers(clerk))
        assert access.json() == {"module": "hr", "allowed": True}

    async def test_employee_link_needs_users_update(self, async_client, admin, viewer, auth_headers):
        response = await async_client.patch(
            f"/principals/{admin.id}", json={"employee_ref": "EMP-2"}, headers=auth_headers(viewer)
        )

        assert response.status_code == 403

    async def test_update_unknown_principal(self, async_client, as_admin):
        response = await async_client.patch("/principals/missing", json={"display_name": "X"}, headers=as_admin)

        assert response.status_code == 404
