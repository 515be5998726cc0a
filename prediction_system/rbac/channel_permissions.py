"""
Channel Role-Based Access Control

Privilege levels inside one channel and the permission matrix that gates
each channel action. Evaluation is side-effect-free; callers resolve the
channel first.
"""
from enum import IntEnum, Enum
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class PrivilegeLevel(IntEnum):
    """Ordered: OWNER > ADMIN > MODERATOR > NONE."""
    NONE = 0
    MODERATOR = 1
    ADMIN = 2
    OWNER = 3


class ChannelAction(str, Enum):
    """All gated channel actions."""
    OPEN_SESSION = "open_session"
    CLOSE_SESSION = "close_session"
    RESOLVE_SESSION = "resolve_session"

    SUBMIT_ENTRY = "submit_entry"
    SUBMIT_ANY_ENTRY = "submit_any_entry"
    EDIT_OWN_ENTRY = "edit_own_entry"
    EDIT_ANY_ENTRY = "edit_any_entry"
    VIEW_ENTRIES = "view_entries"

    MANAGE_ADMINS = "manage_admins"
    MANAGE_MODERATORS = "manage_moderators"
    UPDATE_SETTINGS = "update_settings"
    DEACTIVATE_CHANNEL = "deactivate_channel"


# Permission matrix: action -> minimum privilege level
PERMISSION_MATRIX: Dict[ChannelAction, PrivilegeLevel] = {
    # Session lifecycle - admins and the owner
    ChannelAction.OPEN_SESSION: PrivilegeLevel.ADMIN,
    ChannelAction.CLOSE_SESSION: PrivilegeLevel.ADMIN,
    ChannelAction.RESOLVE_SESSION: PrivilegeLevel.ADMIN,

    # Entries - anyone for themselves, moderators for others
    ChannelAction.SUBMIT_ENTRY: PrivilegeLevel.NONE,
    ChannelAction.SUBMIT_ANY_ENTRY: PrivilegeLevel.MODERATOR,
    ChannelAction.EDIT_OWN_ENTRY: PrivilegeLevel.NONE,
    ChannelAction.EDIT_ANY_ENTRY: PrivilegeLevel.MODERATOR,
    ChannelAction.VIEW_ENTRIES: PrivilegeLevel.NONE,

    # Membership and settings
    ChannelAction.MANAGE_ADMINS: PrivilegeLevel.OWNER,
    ChannelAction.MANAGE_MODERATORS: PrivilegeLevel.ADMIN,
    ChannelAction.UPDATE_SETTINGS: PrivilegeLevel.ADMIN,
    ChannelAction.DEACTIVATE_CHANNEL: PrivilegeLevel.OWNER,
}


def level_of(channel, user) -> PrivilegeLevel:
    """
    Effective privilege of a principal in a channel.

    Owner is identity equality; admin and moderator are membership lookups.
    The owner outranks any membership row it may also hold.
    """
    if channel is None:
        raise ValueError("level_of requires a resolved channel")
    if user is None:
        return PrivilegeLevel.NONE

    user_id = user.id
    if channel.owner_id == user_id:
        return PrivilegeLevel.OWNER
    if user_id in channel.admin_ids:
        return PrivilegeLevel.ADMIN
    if user_id in channel.moderator_ids:
        return PrivilegeLevel.MODERATOR
    return PrivilegeLevel.NONE


def has_at_least(channel, user, required: PrivilegeLevel) -> bool:
    return level_of(channel, user) >= required


def can_perform(channel, user, action: ChannelAction) -> bool:
    """Check the permission matrix for an action."""
    required = PERMISSION_MATRIX.get(action, PrivilegeLevel.OWNER)
    allowed = has_at_least(channel, user, required)
    if not allowed:
        logger.warning(
            f"Permission denied: user {getattr(user, 'id', None)} "
            f"({level_of(channel, user).name}) attempted {action.value} on channel {channel.name}"
        )
    return allowed


def required_level(action: ChannelAction) -> PrivilegeLevel:
    return PERMISSION_MATRIX.get(action, PrivilegeLevel.OWNER)


def get_allowed_actions(level: PrivilegeLevel) -> List[ChannelAction]:
    """List every action a privilege level may perform."""
    return [action for action, minimum in PERMISSION_MATRIX.items() if level >= minimum]


def describe_level(level: Optional[PrivilegeLevel]) -> str:
    if level is None:
        return "none"
    return level.name.lower()
