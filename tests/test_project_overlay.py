"""Tests for project-scoped permission overrides."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from crm.core.exceptions import ForbiddenOperationError, ValidationError
from crm.features.permissions.models import DEFAULT_RESTRICTIONS
from crm.features.permissions.overrides import remove_project_override, set_project_override
from crm.features.permissions.resolver import (
    effective_project_permissions,
    get_project_override,
    has_project_permission,
)
from crm.features.roles.service import create_role


@pytest_asyncio.fixture
async def editor_role(db):
    """Role granting leads:read and leads:update."""
    return await create_role(db, "editor", permissions=["leads:read", "leads:update"], level=4)


@pytest.mark.asyncio
class TestProjectOverlay:
    """Tests for effective_project_permissions."""

    async def test_allow_and_deny_refine_global_set(self, db, cache, editor_role, make_user, make_project):
        """Project allow adds delete, project deny removes update."""
        user = await make_user(editor_role)
        project = await make_project(user)
        await set_project_override(db, user, project, allowed=["leads:delete"], denied=["leads:update"])

        resolved = await effective_project_permissions(db, cache, user, project.id)

        assert resolved.permissions == {"leads:read", "leads:delete"}
        assert resolved.has_override

    async def test_project_deny_beats_global_grant(self, db, cache, roles, make_user, make_project):
        """A project denial wins even when the token is globally granted."""
        user = await make_user(roles["sales"], custom_allowed=["reports:read"])
        project = await make_project(user)
        await set_project_override(db, user, project, denied=["reports:read", "leads:read"])

        assert not await has_project_permission(db, cache, user, project.id, "reports:read")
        assert not await has_project_permission(db, cache, user, project.id, "Leads:Read")
        assert await has_project_permission(db, cache, user, project.id, "leads:create")

    async def test_project_allow_beats_global_denial(self, db, cache, roles, make_user, make_project):
        """A project allowance grants a token the user is globally denied."""
        user = await make_user(roles["sales"], custom_denied=["leads:update"])
        project = await make_project(user)
        await set_project_override(db, user, project, allowed=["leads:update"])

        assert await has_project_permission(db, cache, user, project.id, "leads:update")
        resolved = await effective_project_permissions(db, cache, user, project.id)
        assert "leads:update" in resolved.permissions

    async def test_no_override_uses_global_and_defaults(self, db, cache, roles, make_user, make_project):
        """Without a row the global set and the default flags apply."""
        user = await make_user(roles["sales"])
        project = await make_project(user)

        resolved = await effective_project_permissions(db, cache, user, project.id)

        assert resolved.permissions == set(roles["sales"].permissions)
        assert resolved.restrictions == DEFAULT_RESTRICTIONS
        assert not resolved.has_override
        assert resolved.project_access

    async def test_restrictions_merge_over_defaults(self, db, cache, roles, make_user, make_project):
        """Stored flags override the defaults; the rest keep default values."""
        user = await make_user(roles["sales"])
        project = await make_project(user)
        await set_project_override(db, user, project, restrictions={"can_export_data": True, "can_edit_leads": False})

        resolved = await effective_project_permissions(db, cache, user, project.id)

        assert resolved.restrictions["can_export_data"] is True
        assert resolved.restrictions["can_edit_leads"] is False
        assert resolved.restrictions["can_view_reports"] is True

    async def test_denied_project_reports_no_access(self, db, cache, roles, make_user, make_project):
        """project_access reflects the user's denied list."""
        owner = await make_user(roles["admin"])
        project = await make_project(owner)
        user = await make_user(roles["sales"], denied_projects=[project.id])

        resolved = await effective_project_permissions(db, cache, user, project.id)

        assert not resolved.project_access


@pytest.mark.asyncio
class TestOverrideLifetime:
    """Inactive and expired rows are treated as absent."""

    async def test_inactive_row_ignored(self, db, cache, roles, make_user, make_project):
        """An inactive row does not refine the global set."""
        user = await make_user(roles["sales"])
        project = await make_project(user)
        await set_project_override(db, user, project, denied=["leads:read"], is_active=False)

        assert await get_project_override(db, user.id, project.id) is None
        assert await has_project_permission(db, cache, user, project.id, "leads:read")

    async def test_expired_row_ignored(self, db, cache, roles, make_user, make_project):
        """A row past expires_at does not refine the global set."""
        user = await make_user(roles["sales"])
        project = await make_project(user)
        expired = datetime.now(timezone.utc) - timedelta(hours=1)
        await set_project_override(db, user, project, allowed=["leads:delete"], expires_at=expired)

        resolved = await effective_project_permissions(db, cache, user, project.id)

        assert "leads:delete" not in resolved.permissions
        assert not resolved.has_override

    async def test_future_expiry_in_force(self, db, cache, roles, make_user, make_project):
        """A row expiring later still applies."""
        user = await make_user(roles["sales"])
        project = await make_project(user)
        later = datetime.now(timezone.utc) + timedelta(days=1)
        await set_project_override(db, user, project, allowed=["leads:delete"], expires_at=later)

        assert await has_project_permission(db, cache, user, project.id, "leads:delete")


@pytest.mark.asyncio
class TestOverrideWrites:
    """Tests for set_project_override and remove_project_override."""

    async def test_upsert_replaces_whole_row(self, db, roles, make_user, make_project):
        """A second write replaces lists and flags instead of merging."""
        user = await make_user(roles["sales"])
        admin = await make_user(roles["admin"])
        project = await make_project(admin)

        first = await set_project_override(db, user, project, allowed=["leads:delete"], restrictions={"can_export_data": True})
        second = await set_project_override(db, user, project, denied=["Leads:Read"], assigned_by=admin)

        assert second.id == first.id
        assert second.allowed == []
        assert second.denied == ["leads:read"]
        assert second.restrictions == {}
        assert second.assigned_by_id == admin.id

    async def test_unknown_flag_rejected(self, db, roles, make_user, make_project):
        """Restriction flags outside the known set are rejected."""
        user = await make_user(roles["sales"])
        project = await make_project(user)

        with pytest.raises(ValidationError) as exc_info:
            await set_project_override(db, user, project, restrictions={"can_fly": True})
        assert exc_info.value.details == {"unknown": ["can_fly"]}

    async def test_superadmin_rejected(self, db, roles, make_user, make_project):
        """Superadmin users get no project overrides."""
        superadmin = await make_user(roles["superadmin"])
        project = await make_project(superadmin)

        with pytest.raises(ForbiddenOperationError):
            await set_project_override(db, superadmin, project, denied=["leads:read"])

    async def test_remove(self, db, roles, make_user, make_project):
        """Removing reports whether a row existed."""
        user = await make_user(roles["sales"])
        project = await make_project(user)
        await set_project_override(db, user, project, allowed=["leads:delete"])

        assert await remove_project_override(db, user, project)
        assert not await remove_project_override(db, user, project)
        assert await get_project_override(db, user.id, project.id) is None
