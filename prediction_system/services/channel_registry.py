"""
Channel Registry

Channel identity, membership and settings. Channels are created on first
reference and never deleted; the owner principal shares the channel's name.

Membership helpers mutate the loaded channel only. The caller commits, so a
membership change and its permission check land in one transaction.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.orm.channel import (
    Channel, ChannelMembership, MembershipRole,
    CHANNEL_NAME_MIN_LENGTH, CHANNEL_NAME_MAX_LENGTH, MAX_SCORE_LIMIT,
)
from prediction_system.orm.prediction_session import PredictionSession, PredictionEntry
from prediction_system.orm.user import User, UserRole
from prediction_system.config.settings import settings
from prediction_system.services.identity_service import get_or_create_user
from prediction_system.services.locks import locks

logger = logging.getLogger(__name__)

DISPLAY_NAME_MAX_LENGTH = 50
AUTO_CLOSE_MAX_MINUTES = 24 * 60


class MembershipChange(str, Enum):
    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    REMOVED = "removed"
    NOT_PRESENT = "not_present"


class ChannelNameError(ValueError):
    """Channel name outside the allowed length."""


class ChannelSettingsError(ValueError):
    """Settings update with an out-of-range value."""


def normalize_channel_name(name: Optional[str]) -> str:
    """Lowercase and validate; raises ChannelNameError."""
    normalized = (name or "").strip().lower()
    if not CHANNEL_NAME_MIN_LENGTH <= len(normalized) <= CHANNEL_NAME_MAX_LENGTH:
        raise ChannelNameError(
            f"Channel name must be {CHANNEL_NAME_MIN_LENGTH}-{CHANNEL_NAME_MAX_LENGTH} characters"
        )
    return normalized


async def find_channel(db: AsyncSession, name: str) -> Optional[Channel]:
    result = await db.execute(
        select(Channel).where(Channel.name == (name or "").strip().lower())
    )
    return result.scalar_one_or_none()


async def load_channel(db: AsyncSession, channel_id: int, for_update: bool = False) -> Channel:
    """
    Re-read a channel by id, overwriting any stale in-session state.

    With for_update the row is locked until the transaction ends on
    databases that support it.
    """
    query = select(Channel).where(Channel.id == channel_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one()


async def get_or_create_channel(db: AsyncSession, name: str) -> Channel:
    """
    Resolve a channel case-insensitively, creating it and its owner on a miss.

    Creation commits. A concurrent creator of the same name wins the unique
    index and this call re-reads its row.
    """
    normalized = normalize_channel_name(name)

    channel = await find_channel(db, normalized)
    if channel is not None:
        return channel

    # Owner first: provisioning may roll back and expire what is loaded
    owner = await get_or_create_user(db, normalized, role=UserRole.owner)
    owner_id = owner.id

    async with locks.get(f"create:{normalized}"):
        channel = await find_channel(db, normalized)
        if channel is not None:
            return channel

        channel = Channel(
            name=normalized,
            display_name=(name or "").strip()[:DISPLAY_NAME_MAX_LENGTH],
            owner_id=owner_id,
            max_score=settings.DEFAULT_MAX_SCORE,
        )
        db.add(channel)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(f"[CHANNEL RACE] channel '{normalized}' created concurrently, re-reading")
            channel = await find_channel(db, normalized)
            if channel is None:
                raise
            return channel

    logger.info(f"[CHANNEL] created channel '{normalized}' id={channel.id} owner={owner_id}")
    return await load_channel(db, channel.id)


# ================= MEMBERSHIP =================

def _has_membership(channel: Channel, user_id: int, role: MembershipRole) -> bool:
    return any(m.user_id == user_id for m in channel.members_with_role(role))


def add_member(
    channel: Channel,
    user: User,
    role: MembershipRole,
    added_by: Optional[User] = None,
) -> MembershipChange:
    if _has_membership(channel, user.id, role):
        return MembershipChange.ALREADY_PRESENT

    channel.memberships.append(ChannelMembership(
        user_id=user.id,
        user=user,
        role=role.value,
        added_by_id=added_by.id if added_by else None,
    ))
    logger.info(f"[MEMBERSHIP] {role.value} '{user.username}' added to channel '{channel.name}'")
    return MembershipChange.ADDED


def remove_member(channel: Channel, user: User, role: MembershipRole) -> MembershipChange:
    for membership in channel.members_with_role(role):
        if membership.user_id == user.id:
            channel.memberships.remove(membership)
            logger.info(f"[MEMBERSHIP] {role.value} '{user.username}' removed from channel '{channel.name}'")
            return MembershipChange.REMOVED
    return MembershipChange.NOT_PRESENT


def add_admin(channel: Channel, user: User, added_by: Optional[User] = None) -> MembershipChange:
    return add_member(channel, user, MembershipRole.ADMIN, added_by)


def remove_admin(channel: Channel, user: User) -> MembershipChange:
    return remove_member(channel, user, MembershipRole.ADMIN)


def add_moderator(channel: Channel, user: User, added_by: Optional[User] = None) -> MembershipChange:
    return add_member(channel, user, MembershipRole.MODERATOR, added_by)


def remove_moderator(channel: Channel, user: User) -> MembershipChange:
    return remove_member(channel, user, MembershipRole.MODERATOR)


def list_members(channel: Channel, role: MembershipRole) -> List[str]:
    """Usernames in the order they were added."""
    return [m.user.username for m in channel.members_with_role(role)]


def list_admins(channel: Channel) -> List[str]:
    return list_members(channel, MembershipRole.ADMIN)


def list_moderators(channel: Channel) -> List[str]:
    return list_members(channel, MembershipRole.MODERATOR)


# ================= SETTINGS =================

def update_settings(
    channel: Channel,
    max_score: Optional[int] = None,
    allow_edit_after_close: Optional[bool] = None,
    auto_close_after_minutes: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Validate and apply settings. Nothing is applied when any value is out
    of range. Sessions already created keep the max_score they copied.
    max_predictions_per_user is reported but fixed at 1 by entry uniqueness.
    """
    if max_score is not None and not 1 <= max_score <= MAX_SCORE_LIMIT:
        raise ChannelSettingsError(f"max_score must be between 1 and {MAX_SCORE_LIMIT}")
    if auto_close_after_minutes is not None and not 1 <= auto_close_after_minutes <= AUTO_CLOSE_MAX_MINUTES:
        raise ChannelSettingsError(f"auto_close_after_minutes must be between 1 and {AUTO_CLOSE_MAX_MINUTES}")

    if max_score is not None:
        channel.max_score = max_score
    if allow_edit_after_close is not None:
        channel.allow_edit_after_close = allow_edit_after_close
    if auto_close_after_minutes is not None:
        channel.auto_close_after_minutes = auto_close_after_minutes

    logger.info(f"[SETTINGS] channel '{channel.name}' settings now {channel.settings_dict()}")
    return channel.settings_dict()


def deactivate_channel(channel: Channel) -> bool:
    """Returns False when the channel was already inactive."""
    if not channel.is_active:
        return False
    channel.is_active = False
    logger.info(f"[CHANNEL] channel '{channel.name}' deactivated")
    return True


# ================= STATS & OVERVIEW =================

async def refresh_channel_stats(db: AsyncSession, channel: Channel) -> None:
    """Recount prediction totals across every session of the channel."""
    result = await db.execute(
        select(
            func.count(PredictionEntry.id),
            func.count(func.distinct(PredictionEntry.user_id)),
        )
        .join(PredictionSession, PredictionSession.id == PredictionEntry.session_id)
        .where(PredictionSession.channel_id == channel.id)
    )
    total_predictions, total_users = result.one()
    channel.total_predictions = total_predictions
    channel.total_users = total_users


async def get_channel_overview(db: AsyncSession, channel: Channel) -> Dict[str, Any]:
    current = None
    if channel.current_session_id is not None:
        result = await db.execute(
            select(PredictionSession).where(PredictionSession.id == channel.current_session_id)
        )
        session = result.scalar_one_or_none()
        current = session.to_dict() if session else None

    return {
        "id": channel.id,
        "name": channel.name,
        "display_name": channel.display_name,
        "owner": channel.owner.username if channel.owner else None,
        "is_active": channel.is_active,
        "admins": [m.to_dict() for m in channel.members_with_role(MembershipRole.ADMIN)],
        "moderators": [m.to_dict() for m in channel.members_with_role(MembershipRole.MODERATOR)],
        "settings": channel.settings_dict(),
        "stats": channel.stats_dict(),
        "current_session": current,
        "created_at": channel.created_at.isoformat() if channel.created_at else None,
    }
