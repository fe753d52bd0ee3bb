"""HTTP tests: authentication, authorization dependencies and the admin routes."""
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import select

from crm.features.permissions.models import AuditLog
from crm.features.permissions.resolver import effective_permissions


@pytest_asyncio.fixture
async def people(roles, make_user):
    """One user per built-in role that the routes care about."""
    return SimpleNamespace(
        superadmin=await make_user(roles["superadmin"], name="Root"),
        admin=await make_user(roles["admin"], name="Asha"),
        manager=await make_user(roles["manager"], name="Mohan"),
        sales=await make_user(roles["sales"], name="Sita"),
    )


@pytest.mark.asyncio
class TestPublicEndpoints:
    """Tests for the unauthenticated endpoints."""

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "online"


@pytest.mark.asyncio
class TestAuthentication:
    """Bearer token handling."""

    async def test_missing_token(self, client):
        """No Authorization header is a 401."""
        response = await client.get("/permissions/me")
        assert response.status_code == 401

    async def test_invalid_token(self, client):
        """A token signed with another key is a 401."""
        response = await client.get("/permissions/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_unknown_user(self, client, roles, make_user, auth_headers, db):
        """A valid token for a deleted user is a 401."""
        user = await make_user(roles["sales"])
        headers = auth_headers(user)
        await db.delete(user)
        await db.flush()

        response = await client.get("/permissions/me", headers=headers)
        assert response.status_code == 401

    async def test_inactive_user(self, client, roles, make_user, auth_headers):
        """Deactivated accounts are refused with 403."""
        user = await make_user(roles["sales"], is_active=False)

        response = await client.get("/permissions/me", headers=auth_headers(user))
        assert response.status_code == 403

    async def test_last_login_recorded(self, client, people, auth_headers):
        """Authenticated requests stamp last_login_at."""
        response = await client.get("/users/me", headers=auth_headers(people.sales))

        assert response.status_code == 200
        assert response.json()["email"] == people.sales.email
        assert people.sales.last_login_at is not None


@pytest.mark.asyncio
class TestPermissionRoutes:
    """Tests for /permissions."""

    async def test_my_permissions(self, client, people, roles, auth_headers):
        """The caller sees role, custom and effective permissions."""
        response = await client.get("/permissions/me", headers=auth_headers(people.sales))

        assert response.status_code == 200
        body = response.json()
        assert body["role"] == "sales"
        assert body["effective_permissions"] == sorted(roles["sales"].permissions)
        assert body["custom_permissions"] == {"allowed": [], "denied": []}

    async def test_missing_permission_is_403_with_message(self, client, people, auth_headers):
        """A sales user cannot list user permissions."""
        response = await client.get("/permissions/users", headers=auth_headers(people.sales))

        assert response.status_code == 403
        assert response.json() == {"message": "Permission denied: users:read"}

    async def test_superadmin_bypasses_own_denial(self, client, db, cache, people, auth_headers):
        """The dependency short-circuits superadmin while resolution still applies the denial."""
        people.superadmin.custom_denied = ["users:manage"]
        await db.flush()

        response = await client.get("/permissions/users", headers=auth_headers(people.superadmin))

        assert response.status_code == 200
        effective = await effective_permissions(db, cache, people.superadmin)
        assert "users:manage" not in effective
        assert "users:read" not in effective

    async def test_deny_writes_override_and_audit_log(self, client, db, cache, people, auth_headers):
        """An admin denies a token to a sales user."""
        response = await client.post(
            f"/permissions/users/{people.sales.id}/deny",
            json={"permissions": [" Leads:Read "]},
            headers=auth_headers(people.admin),
        )

        assert response.status_code == 200
        assert "leads:read" not in response.json()["effective_permissions"]
        assert people.sales.custom_denied == ["leads:read"]

        result = await db.execute(select(AuditLog).where(AuditLog.action == "deny"))
        entry = result.scalars().one()
        assert entry.user_id == people.admin.id
        assert entry.resource_id == people.sales.id

        logs = await client.get("/permissions/audit-logs?action=deny", headers=auth_headers(people.superadmin))
        assert logs.status_code == 200
        assert logs.json()["total"] == 1

    async def test_set_effective_via_api(self, client, people, auth_headers):
        """PUT effective stores the minimal diff."""
        response = await client.put(
            f"/permissions/users/{people.sales.id}/effective",
            json={"permissions": ["leads:read", "reports:export"]},
            headers=auth_headers(people.admin),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["effective_permissions"] == ["leads:read", "reports:export"]
        assert body["custom_permissions"]["allowed"] == ["reports:export"]

    async def test_invalid_token_is_400(self, client, people, auth_headers):
        """Malformed tokens are rejected with details."""
        response = await client.post(
            f"/permissions/users/{people.sales.id}/allow",
            json={"permissions": ["leads"]},
            headers=auth_headers(people.admin),
        )

        assert response.status_code == 400
        assert response.json()["details"] == {"invalid": ["leads"]}

    async def test_peer_is_not_manageable(self, client, roles, make_user, people, auth_headers):
        """An admin cannot edit another admin or the superadmin."""
        other_admin = await make_user(roles["admin"])

        for target in (other_admin, people.superadmin):
            response = await client.post(
                f"/permissions/users/{target.id}/deny",
                json={"permissions": ["leads:read"]},
                headers=auth_headers(people.admin),
            )
            assert response.status_code == 403

    async def test_superadmin_overrides_are_protected(self, client, people, auth_headers):
        """Even the superadmin cannot edit superadmin overrides directly."""
        response = await client.post(
            f"/permissions/users/{people.superadmin.id}/deny",
            json={"permissions": ["leads:read"]},
            headers=auth_headers(people.superadmin),
        )

        assert response.status_code == 403
        assert "superadmin" in response.json()["message"]

    async def test_check(self, client, people, auth_headers):
        """The check endpoint normalizes and resolves a token."""
        response = await client.post(
            "/permissions/check",
            json={"permission": " Leads:Read "},
            headers=auth_headers(people.sales),
        )

        assert response.status_code == 200
        assert response.json()["permission"] == "leads:read"
        assert response.json()["has_permission"] is True

    async def test_request_validation_shape(self, client, people, auth_headers):
        """Body validation errors are flattened to field: message."""
        response = await client.post("/permissions/check", json={}, headers=auth_headers(people.sales))

        assert response.status_code == 400
        assert "permission" in response.json()

    async def test_clean_all_requires_superadmin(self, client, people, auth_headers):
        """Only the superadmin may clean every user."""
        response = await client.post("/permissions/clean-all", headers=auth_headers(people.admin))
        assert response.status_code == 403

        response = await client.post("/permissions/clean-all", headers=auth_headers(people.superadmin))
        assert response.status_code == 200
        assert response.json()["cleaned"] == 0


@pytest.mark.asyncio
class TestRoleRoutes:
    """Tests for /roles."""

    async def test_update_cascades(self, client, db, cache, roles, people, auth_headers):
        """Editing sales permissions reports the cascade and preserves effective sets."""
        before = await effective_permissions(db, cache, people.sales)

        response = await client.put(
            f"/roles/{roles['sales'].id}",
            json={"permissions": ["leads:read", "leads:delete"]},
            headers=auth_headers(people.superadmin),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["role"]["permissions"] == ["leads:delete", "leads:read"]
        assert body["cascades"]["permissions"]["affected"] == 1
        assert await effective_permissions(db, cache, people.sales) == before

    async def test_superadmin_role_cannot_be_deleted(self, client, roles, people, auth_headers):
        response = await client.delete(f"/roles/{roles['superadmin'].id}", headers=auth_headers(people.superadmin))

        assert response.status_code == 403
        assert response.json()["message"] == "The superadmin role cannot be deleted"

    async def test_list_with_counts(self, client, people, auth_headers):
        """Superadmin lists roles with user counts."""
        response = await client.get("/roles", headers=auth_headers(people.superadmin))

        assert response.status_code == 200
        counts = {role["name"]: role["user_count"] for role in response.json()}
        assert counts["sales"] == 1
        assert counts["user"] == 0

    async def test_assignable(self, client, people, auth_headers):
        """A manager may assign only roles below level 3."""
        response = await client.get("/roles/assignable", headers=auth_headers(people.manager))

        assert response.status_code == 200
        assert [role["name"] for role in response.json()] == ["hr", "sales", "user"]


@pytest.mark.asyncio
class TestUserRoutes:
    """Tests for /users."""

    async def test_create_user_on_lower_role(self, client, people, auth_headers):
        """An admin creates a sales user."""
        response = await client.post(
            "/users",
            json={"email": "New.Hire@Example.com", "name": "New Hire", "role": "sales"},
            headers=auth_headers(people.admin),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["email"] == "new.hire@example.com"
        assert (body["role"], body["level"]) == ("sales", 5)

    async def test_cannot_create_peer_role(self, client, people, auth_headers):
        """An admin cannot hand out the admin role."""
        response = await client.post(
            "/users",
            json={"email": "peer@example.com", "name": "Peer", "role": "admin"},
            headers=auth_headers(people.admin),
        )

        assert response.status_code == 403

    async def test_reassign_role(self, client, people, auth_headers):
        """An admin moves a sales user to hr."""
        response = await client.put(
            f"/users/{people.sales.id}/role",
            json={"role": "hr"},
            headers=auth_headers(people.admin),
        )

        assert response.status_code == 200
        assert (response.json()["role"], response.json()["level"]) == ("hr", 4)


@pytest.mark.asyncio
class TestProjectRoutes:
    """Membership checks and project-scoped permissions over HTTP."""

    async def test_project_override_grants_scoped_permission(self, client, people, auth_headers):
        """A manager needs a project override to add members."""
        created = await client.post(
            "/projects",
            json={"name": "Lakeview", "location": "Nashik", "developer": "Acme Builders"},
            headers=auth_headers(people.manager),
        )
        assert created.status_code == 201
        project_id = created.json()["id"]

        outsider = await client.get(f"/projects/{project_id}", headers=auth_headers(people.sales))
        assert outsider.status_code == 403
        assert outsider.json() == {"message": "You are not a member of this project"}

        denied = await client.post(
            f"/projects/{project_id}/members",
            json={"user_id": people.sales.id},
            headers=auth_headers(people.manager),
        )
        assert denied.status_code == 403

        override = await client.put(
            f"/permissions/users/{people.manager.id}/projects/{project_id}",
            json={"allowed": ["projects:update"]},
            headers=auth_headers(people.admin),
        )
        assert override.status_code == 200

        added = await client.post(
            f"/projects/{project_id}/members",
            json={"user_id": people.sales.id},
            headers=auth_headers(people.manager),
        )
        assert added.status_code == 200
        assert people.sales.id in added.json()["member_ids"]

        member_view = await client.get(f"/projects/{project_id}", headers=auth_headers(people.sales))
        assert member_view.status_code == 200

    async def test_owner_cannot_be_removed(self, client, people, auth_headers):
        created = await client.post(
            "/projects",
            json={"name": "Harbor", "location": "Goa", "developer": "Acme Builders"},
            headers=auth_headers(people.superadmin),
        )
        project_id = created.json()["id"]

        response = await client.delete(
            f"/projects/{project_id}/members/{people.superadmin.id}",
            headers=auth_headers(people.superadmin),
        )

        assert response.status_code == 403


@pytest.mark.asyncio
class TestReportingRoutes:
    """Tests for /reporting."""

    async def test_add_link_and_read_back(self, client, people, auth_headers):
        """The superadmin links sales to manager; the admin reads the graph."""
        response = await client.post(
            f"/reporting/{people.sales.id}/links",
            json={"reports_to_id": people.manager.id},
            headers=auth_headers(people.superadmin),
        )

        assert response.status_code == 201
        assert response.json()["path"] == f"/{people.manager.id}/"

        graph = await client.get(f"/reporting/{people.sales.id}", headers=auth_headers(people.admin))
        assert graph.status_code == 200
        superior_ids = {user["id"] for user in graph.json()["superiors"]}
        assert superior_ids == {people.manager.id, people.superadmin.id}

    async def test_rank_conflict_is_409(self, client, people, auth_headers):
        """A manager cannot report to a sales user."""
        response = await client.post(
            f"/reporting/{people.manager.id}/links",
            json={"reports_to_id": people.sales.id},
            headers=auth_headers(people.superadmin),
        )

        assert response.status_code == 409
