"""
Identity Service

Resolves usernames to principals, auto-provisioning chat-bot users on first
sight. Principals compare by id; the username is only a lookup key.

Provisioning commits immediately. Call it before loading the state you are
about to mutate: a lost provisioning race rolls the session back, which
expires every instance loaded so far.
"""
import logging
import secrets
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.orm.user import User, UserRole
from prediction_system.services.locks import locks

logger = logging.getLogger(__name__)

LEGACY_EMAIL_DOMAIN = "legacy.local"
USERNAME_MAX_LENGTH = 50


def normalize_username(username: Optional[str]) -> str:
    """Lowercase, trim and drop a leading chat mention marker."""
    return (username or "").strip().lstrip("@").strip().lower()


def unusable_password_hash() -> str:
    """A value no password verifies against."""
    return "!" + secrets.token_urlsafe(24)


async def find_user(db: AsyncSession, username: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.username == normalize_username(username))
    )
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _provision(db: AsyncSession, name: str, role: UserRole) -> bool:
    """
    Insert a legacy account and commit.

    Returns False when another writer created the same username first.
    """
    user = User(
        username=name,
        email=f"{name}@{LEGACY_EMAIL_DOMAIN}",
        password_hash=unusable_password_hash(),
        role=role,
        is_legacy=True,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(f"[IDENTITY RACE] user '{name}' provisioned concurrently, re-reading")
        return False

    logger.info(f"[IDENTITY] provisioned legacy user '{name}' id={user.id}")
    return True


async def get_or_create_users(
    db: AsyncSession,
    usernames: List[str],
    owner_usernames: Optional[List[str]] = None,
) -> Dict[str, User]:
    """
    Resolve several usernames at once, provisioning the missing ones.

    The final read happens after all provisioning, so every returned
    instance is fresh even if a race forced a rollback along the way.
    """
    names = []
    for username in usernames:
        name = normalize_username(username)
        if not name:
            raise ValueError("username is required")
        if len(name) > USERNAME_MAX_LENGTH:
            raise ValueError(f"username must be at most {USERNAME_MAX_LENGTH} characters")
        if name not in names:
            names.append(name)
    owners = {normalize_username(name) for name in (owner_usernames or [])}

    async with locks.get("provision:users"):
        result = await db.execute(select(User).where(User.username.in_(names)))
        existing = {user.username for user in result.scalars().all()}

        for name in names:
            if name not in existing:
                role = UserRole.owner if name in owners else UserRole.user
                await _provision(db, name, role)

    result = await db.execute(select(User).where(User.username.in_(names)))
    users = {user.username: user for user in result.scalars().all()}

    missing = [name for name in names if name not in users]
    if missing:
        raise LookupError(f"users could not be provisioned: {missing}")

    promoted = False
    for name in owners:
        user = users.get(name)
        if user is not None and user.role != UserRole.owner:
            user.role = UserRole.owner
            promoted = True
    if promoted:
        await db.commit()

    return users


async def get_or_create_user(
    db: AsyncSession,
    username: str,
    role: UserRole = UserRole.user,
) -> User:
    """Get a principal by username, creating a legacy account when absent."""
    name = normalize_username(username)
    owners = [name] if role == UserRole.owner else None
    users = await get_or_create_users(db, [name], owner_usernames=owners)
    return users[name]
