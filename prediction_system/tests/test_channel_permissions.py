"""
Unit Tests for Channel RBAC
"""
from types import SimpleNamespace

import pytest

from prediction_system.rbac.channel_permissions import (
    PERMISSION_MATRIX,
    ChannelAction,
    PrivilegeLevel,
    can_perform,
    describe_level,
    get_allowed_actions,
    has_at_least,
    level_of,
    required_level,
)


def make_channel(owner_id=1, admin_ids=(), moderator_ids=()):
    return SimpleNamespace(
        name="test",
        owner_id=owner_id,
        admin_ids=set(admin_ids),
        moderator_ids=set(moderator_ids),
    )


def principal(user_id):
    return SimpleNamespace(id=user_id)


class TestLevelOf:

    def test_owner_by_identity(self):
        assert level_of(make_channel(owner_id=7), principal(7)) == PrivilegeLevel.OWNER

    def test_owner_outranks_own_membership(self):
        channel = make_channel(owner_id=7, admin_ids=[7], moderator_ids=[7])
        assert level_of(channel, principal(7)) == PrivilegeLevel.OWNER

    def test_admin_outranks_moderator_membership(self):
        channel = make_channel(admin_ids=[2], moderator_ids=[2])
        assert level_of(channel, principal(2)) == PrivilegeLevel.ADMIN

    def test_moderator(self):
        assert level_of(make_channel(moderator_ids=[3]), principal(3)) == PrivilegeLevel.MODERATOR

    def test_stranger_and_anonymous(self):
        channel = make_channel(admin_ids=[2])
        assert level_of(channel, principal(99)) == PrivilegeLevel.NONE
        assert level_of(channel, None) == PrivilegeLevel.NONE

    def test_requires_resolved_channel(self):
        with pytest.raises(ValueError):
            level_of(None, principal(1))


class TestPermissionMatrix:

    def test_levels_are_ordered(self):
        assert PrivilegeLevel.OWNER > PrivilegeLevel.ADMIN > PrivilegeLevel.MODERATOR > PrivilegeLevel.NONE

    def test_every_action_has_a_minimum(self):
        for action in ChannelAction:
            assert action in PERMISSION_MATRIX

    @pytest.mark.parametrize("action,level,allowed", [
        (ChannelAction.OPEN_SESSION, PrivilegeLevel.ADMIN, True),
        (ChannelAction.OPEN_SESSION, PrivilegeLevel.MODERATOR, False),
        (ChannelAction.RESOLVE_SESSION, PrivilegeLevel.OWNER, True),
        (ChannelAction.SUBMIT_ENTRY, PrivilegeLevel.NONE, True),
        (ChannelAction.SUBMIT_ANY_ENTRY, PrivilegeLevel.MODERATOR, True),
        (ChannelAction.SUBMIT_ANY_ENTRY, PrivilegeLevel.NONE, False),
        (ChannelAction.EDIT_ANY_ENTRY, PrivilegeLevel.MODERATOR, True),
        (ChannelAction.EDIT_ANY_ENTRY, PrivilegeLevel.NONE, False),
        (ChannelAction.MANAGE_ADMINS, PrivilegeLevel.ADMIN, False),
        (ChannelAction.MANAGE_ADMINS, PrivilegeLevel.OWNER, True),
        (ChannelAction.MANAGE_MODERATORS, PrivilegeLevel.ADMIN, True),
        (ChannelAction.DEACTIVATE_CHANNEL, PrivilegeLevel.ADMIN, False),
    ])
    def test_allowed_actions_by_level(self, action, level, allowed):
        assert (action in get_allowed_actions(level)) is allowed

    def test_higher_levels_inherit_lower_actions(self):
        for lower, higher in [
            (PrivilegeLevel.NONE, PrivilegeLevel.MODERATOR),
            (PrivilegeLevel.MODERATOR, PrivilegeLevel.ADMIN),
            (PrivilegeLevel.ADMIN, PrivilegeLevel.OWNER),
        ]:
            assert set(get_allowed_actions(lower)) <= set(get_allowed_actions(higher))

    def test_required_level(self):
        assert required_level(ChannelAction.CLOSE_SESSION) == PrivilegeLevel.ADMIN


class TestCanPerform:

    def test_admin_may_open_but_not_manage_admins(self):
        channel = make_channel(admin_ids=[2])
        assert can_perform(channel, principal(2), ChannelAction.OPEN_SESSION)
        assert not can_perform(channel, principal(2), ChannelAction.MANAGE_ADMINS)

    def test_anonymous_may_only_do_unprivileged_actions(self):
        channel = make_channel()
        assert can_perform(channel, None, ChannelAction.VIEW_ENTRIES)
        assert not can_perform(channel, None, ChannelAction.CLOSE_SESSION)

    def test_has_at_least(self):
        channel = make_channel(moderator_ids=[3])
        assert has_at_least(channel, principal(3), PrivilegeLevel.MODERATOR)
        assert not has_at_least(channel, principal(3), PrivilegeLevel.ADMIN)


def test_describe_level():
    assert describe_level(PrivilegeLevel.ADMIN) == "admin"
    assert describe_level(None) == "none"
