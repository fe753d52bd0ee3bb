"""Tests for project membership rules."""
import pytest

from crm.core.exceptions import ForbiddenError, ForbiddenOperationError, NotFoundError
from crm.features.permissions.dependencies import require_project_action
from crm.features.permissions.overrides import set_project_override
from crm.features.projects import service


@pytest.mark.asyncio
class TestMembership:
    """Tests for adding and removing members."""

    async def test_owner_is_member(self, db, roles, make_user):
        """The creator owns the project and is its first member."""
        owner = await make_user(roles["manager"])

        project = await service.create_project(db, owner, "Lakeview", "Nashik", "Acme Builders")

        assert project.owner_id == owner.id
        assert project.member_ids == [owner.id]

    async def test_owner_cannot_be_removed(self, db, roles, make_user):
        """Removing the owner is a forbidden operation."""
        owner = await make_user(roles["manager"])
        project = await service.create_project(db, owner, "Lakeview", "Nashik", "Acme Builders")

        with pytest.raises(ForbiddenOperationError):
            await service.remove_member(db, project, owner)
        assert owner.id in project.member_ids

    async def test_add_and_remove(self, db, roles, make_user, make_project):
        """Members can be added and removed; adding twice is a no-op."""
        owner = await make_user(roles["manager"])
        member = await make_user(roles["sales"])
        project = await make_project(owner)

        await service.add_member(db, project, member)
        await service.add_member(db, project, member)
        assert project.member_ids == [owner.id, member.id]

        await service.remove_member(db, project, member)
        assert project.member_ids == [owner.id]

    async def test_remove_non_member(self, db, roles, make_user, make_project):
        """Removing someone who is not a member is NotFound."""
        owner = await make_user(roles["manager"])
        stranger = await make_user(roles["sales"])
        project = await make_project(owner)

        with pytest.raises(NotFoundError):
            await service.remove_member(db, project, stranger)

    async def test_max_projects_enforced(self, db, roles, make_user, make_project):
        """A user at their project cap cannot join another project."""
        owner = await make_user(roles["manager"])
        capped = await make_user(roles["sales"], max_projects=1)
        first = await make_project(owner, name="First")
        second = await make_project(owner, name="Second")
        await service.add_member(db, first, capped)

        with pytest.raises(ForbiddenError):
            await service.add_member(db, second, capped)

    async def test_denied_project_blocks_join(self, db, roles, make_user, make_project):
        """A user denied a project cannot be added to it."""
        owner = await make_user(roles["manager"])
        project = await make_project(owner)
        blocked = await make_user(roles["sales"], denied_projects=[project.id])

        with pytest.raises(ForbiddenError):
            await service.add_member(db, project, blocked)


@pytest.mark.asyncio
class TestManagers:
    """Tests for project managers."""

    async def test_manager_is_member(self, db, roles, make_user, make_project):
        """Adding a manager also adds them as a member."""
        owner = await make_user(roles["manager"])
        lead = await make_user(roles["hr"])
        project = await make_project(owner)

        await service.add_manager(db, project, lead)

        assert lead.id in project.member_ids
        assert project.manager_ids == [lead.id]

    async def test_removing_member_drops_manager(self, db, roles, make_user, make_project):
        """A removed member is no longer a manager either."""
        owner = await make_user(roles["manager"])
        lead = await make_user(roles["hr"])
        project = await make_project(owner)
        await service.add_manager(db, project, lead)

        await service.remove_member(db, project, lead)

        assert project.manager_ids == []

    async def test_remove_manager_keeps_membership(self, db, roles, make_user, make_project):
        """Removing a manager keeps them on the project."""
        owner = await make_user(roles["manager"])
        lead = await make_user(roles["hr"])
        project = await make_project(owner)
        await service.add_manager(db, project, lead)

        await service.remove_manager(db, project, lead)

        assert project.manager_ids == []
        assert lead.id in project.member_ids


@pytest.mark.asyncio
class TestProjectAction:
    """Tests for the restriction flag dependency."""

    async def test_default_flag_denies_export(self, db, cache, roles, make_user, make_project):
        """can_export_data is off unless an override turns it on."""
        user = await make_user(roles["sales"])
        project = await make_project(user)
        check = require_project_action("can_export_data")

        with pytest.raises(ForbiddenError):
            await check(project_id=project.id, db=db, cache=cache, current_user=user)

        await set_project_override(db, user, project, restrictions={"can_export_data": True})
        assert await check(project_id=project.id, db=db, cache=cache, current_user=user) is user

    async def test_superadmin_passes(self, db, cache, roles, make_user, make_project):
        """Unconditional admins skip restriction flags."""
        superadmin = await make_user(roles["superadmin"])
        project = await make_project(superadmin)
        check = require_project_action("can_delete_leads")

        assert await check(project_id=project.id, db=db, cache=cache, current_user=superadmin) is superadmin


class TestProjectActionFactory:
    """Tests for building the restriction flag dependency."""

    def test_unknown_flag(self):
        """Unknown flags fail when the dependency is built."""
        with pytest.raises(ValueError):
            require_project_action("can_fly")
