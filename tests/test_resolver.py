"""Tests for permission resolution: precedence, inheritance and normalization."""
import asyncio

import pytest

from crm.core.exceptions import LookupTimeoutError
from crm.features.permissions.cache import RoleCache
from crm.features.permissions.resolver import (
    can_access_project,
    combine_permissions,
    effective_permissions,
    has_permission,
    is_unconditional_admin,
)
from crm.features.permissions.tokens import is_valid_token, normalize_permissions
from crm.features.roles.service import create_role


class TestTokenNormalization:
    """Tests for token helpers."""

    def test_trims_lowercases_and_deduplicates(self):
        """Tokens are trimmed, lowercased and deduplicated in first-seen order."""
        assert normalize_permissions([" Leads:Read ", "leads:read", "USERS:update"]) == [
            "leads:read",
            "users:update",
        ]

    def test_drops_non_strings_and_empties(self):
        """Non-string and blank entries are dropped."""
        assert normalize_permissions(["leads:read", None, 42, "  ", {"x": 1}]) == ["leads:read"]

    def test_none_is_empty(self):
        """None normalizes to an empty list."""
        assert normalize_permissions(None) == []

    def test_token_shape(self):
        """Only resource:action tokens are valid."""
        assert is_valid_token("channel-partner:manage")
        assert is_valid_token("leads:*")
        assert not is_valid_token("leads")
        assert not is_valid_token("leads:read:all")

    def test_combine_denied_wins(self):
        """Denied tokens are removed even when granted by base and allowed."""
        assert combine_permissions(["a:x", "b:y"], ["b:y", "c:z"], ["b:y"]) == {"a:x", "c:z"}


@pytest.mark.asyncio
class TestEffectivePermissions:
    """Tests for effective_permissions and has_permission."""

    async def test_denial_removes_role_permission(self, db, cache, make_user):
        """An hr user denied leads:read keeps only users:read."""
        hr = await create_role(db, "hr", permissions=["users:read", "leads:read"], level=4)
        user = await make_user(hr, custom_denied=["leads:read"])

        assert await effective_permissions(db, cache, user) == {"users:read"}

    async def test_denial_wins_over_allowance(self, db, cache, roles, make_user):
        """A token both allowed and denied is never granted."""
        user = await make_user(
            roles["sales"],
            custom_allowed=["leads:delete", "leads:read"],
            custom_denied=["leads:delete", "leads:read"],
        )

        assert not await has_permission(db, cache, user, "leads:delete")
        assert not await has_permission(db, cache, user, "leads:read")
        effective = await effective_permissions(db, cache, user)
        assert "leads:delete" not in effective
        assert "leads:read" not in effective

    async def test_role_permissions_are_inherited(self, db, cache, roles, make_user):
        """Every role token not denied is granted."""
        user = await make_user(roles["sales"], custom_denied=["leads:update"])

        for token in roles["sales"].permissions:
            expected = token != "leads:update"
            assert await has_permission(db, cache, user, token) is expected

    async def test_custom_allowance_grants(self, db, cache, roles, make_user):
        """A custom allowance grants a token the role lacks."""
        user = await make_user(roles["user"], custom_allowed=["reports:export"])

        assert await has_permission(db, cache, user, "reports:export")
        assert "reports:export" in await effective_permissions(db, cache, user)

    async def test_tokens_are_case_and_space_insensitive(self, db, cache, roles, make_user):
        """Padded, mixed-case tokens resolve like their normalized form."""
        user = await make_user(roles["sales"], custom_denied=[" LEADS:Update "])

        assert await has_permission(db, cache, user, " Leads:Read ") == await has_permission(
            db, cache, user, "leads:read"
        )
        assert not await has_permission(db, cache, user, "leads:update")

    async def test_stored_tokens_are_normalized_on_read(self, db, cache, make_user):
        """Role and override lists with odd casing and junk still resolve cleanly."""
        role = await create_role(db, "support", permissions=["tickets:read"], level=5)
        role.permissions = ["Tickets:Read ", "TICKETS:update"]
        await db.flush()
        user = await make_user(role, custom_allowed=[" Notes:Read", None, ""], custom_denied=["tickets:UPDATE"])

        assert await effective_permissions(db, cache, user) == {"tickets:read", "notes:read"}

    async def test_empty_or_non_string_token_is_never_granted(self, db, cache, roles, make_user):
        """has_permission is False for blank and non-string tokens."""
        user = await make_user(roles["admin"])

        assert not await has_permission(db, cache, user, "")
        assert not await has_permission(db, cache, user, None)

    async def test_missing_role_degrades_to_empty_base(self, db, cache, roles, make_user):
        """A dangling role reference yields only the custom allowances."""
        user = await make_user(roles["sales"], custom_allowed=["reports:read"])
        user.role = "ghost"
        await db.flush()

        assert await effective_permissions(db, cache, user) == {"reports:read"}
        assert not await has_permission(db, cache, user, "leads:read")


@pytest.mark.asyncio
class TestSuperadminDuality:
    """Superadmin bypass lives in the dependencies, not in resolution."""

    async def test_superadmin_denials_still_apply(self, db, cache, roles, make_user):
        """The formula applies to superadmin: a denial removes the token."""
        superadmin = await make_user(roles["superadmin"], custom_denied=["system:manage"])

        assert is_unconditional_admin(superadmin)
        assert "system:manage" not in await effective_permissions(db, cache, superadmin)
        assert not await has_permission(db, cache, superadmin, "system:manage")

    async def test_level_one_is_unconditional(self, db, roles, make_user):
        """Any level 1 user is an unconditional admin."""
        user = await make_user(roles["admin"], level=1)
        assert is_unconditional_admin(user)

    async def test_regular_user_is_not_unconditional(self, db, roles, make_user):
        """Non-superadmin users below level 1 are not unconditional admins."""
        user = await make_user(roles["admin"])
        assert not is_unconditional_admin(user)


class _SlowSession:
    """Stand-in session whose queries never finish in time."""

    def __init__(self):
        self.info = {}

    async def execute(self, stmt):
        await asyncio.sleep(1)


@pytest.mark.asyncio
class TestLookupTimeout:
    """A slow role lookup surfaces as LookupTimeoutError."""

    async def test_timeout_is_not_treated_as_no_permissions(self, db, roles, make_user):
        """has_permission raises instead of answering False."""
        user = await make_user(roles["sales"])
        slow_cache = RoleCache(timeout_seconds=0.01)

        with pytest.raises(LookupTimeoutError):
            await has_permission(_SlowSession(), slow_cache, user, "leads:read")

    async def test_explicit_denial_answers_without_lookup(self, db, roles, make_user):
        """Denials are decided before the role is read."""
        user = await make_user(roles["sales"], custom_denied=["leads:read"])
        slow_cache = RoleCache(timeout_seconds=0.01)

        assert not await has_permission(_SlowSession(), slow_cache, user, "leads:read")


@pytest.mark.asyncio
class TestProjectAccess:
    """Tests for can_access_project."""

    async def test_no_lists_means_open(self, db, roles, make_user):
        """Users without lists can access any project."""
        user = await make_user(roles["sales"])
        assert can_access_project(user, "p1")

    async def test_denied_list_blocks(self, db, roles, make_user):
        """A denied project is never accessible."""
        user = await make_user(roles["sales"], denied_projects=["p1"])
        assert not can_access_project(user, "p1")
        assert can_access_project(user, "p2")

    async def test_allowed_list_restricts(self, db, roles, make_user):
        """A non-empty allowed list admits only listed projects."""
        user = await make_user(roles["sales"], allowed_projects=["p1"])
        assert can_access_project(user, "p1")
        assert not can_access_project(user, "p2")

    async def test_superadmin_ignores_lists(self, db, roles, make_user):
        """Unconditional admins bypass both lists."""
        user = await make_user(roles["superadmin"], denied_projects=["p1"])
        assert can_access_project(user, "p1")
