"""
prediction_system/routes/auth.py
Authentication routes: register, login, refresh, me
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.database import get_db
from prediction_system.errors import ErrorCode
from prediction_system.orm.user import User
from prediction_system.rate_limit import limiter, LOGIN_LIMIT, REGISTER_LIMIT
from prediction_system.rbac.auth import (
    create_token_pair, get_current_user, hash_password_async, user_from_token, verify_password_async,
)
from prediction_system.schemas.auth import LoginRequest, RefreshRequest, RegisterRequest
from prediction_system.services.identity_service import LEGACY_EMAIL_DOMAIN, normalize_username

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": "Unauthorized",
            "message": message,
            "code": ErrorCode.AUTH_INVALID
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


@router.post("/register", status_code=201)
@limiter.limit(REGISTER_LIMIT)
async def register(
    request: Request,  # Required by slowapi
    user_data: RegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a principal.

    A username first seen through chat-bot traffic can be claimed once:
    the auto-provisioned account keeps its id, so channel ownership and
    memberships carry over.
    """
    result = await db.execute(
        select(User).where(or_(User.username == user_data.username, User.email == user_data.email))
    )
    existing = result.scalars().all()

    claimable = None
    for user in existing:
        if user.username == user_data.username and user.is_legacy and user.email.endswith(f"@{LEGACY_EMAIL_DOMAIN}"):
            claimable = user
        else:
            field = "username" if user.username == user_data.username else "email"
            logger.warning(f"Registration rejected, {field} already taken: {user_data.username}")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "success": False,
                    "error": "Conflict",
                    "message": f"That {field} is already registered",
                    "code": ErrorCode.USER_EXISTS,
                    "details": {"field": field}
                }
            )

    password_hash = await hash_password_async(user_data.password)

    if claimable is not None:
        user = claimable
        user.email = user_data.email
        user.password_hash = password_hash
        user.is_legacy = False
        logger.info(f"Legacy account claimed: {user.username} (id={user.id})")
    else:
        user = User(
            username=user_data.username,
            email=user_data.email,
            password_hash=password_hash,
        )
        db.add(user)

    await db.commit()
    await db.refresh(user)

    logger.info(f"User registered successfully: {user.username}")
    return {**create_token_pair(user), "user": user.to_dict()}


@router.post("/login")
@limiter.limit(LOGIN_LIMIT)
async def login(
    request: Request,  # Required by slowapi
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    username = normalize_username(credentials.username)
    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()

    password_valid = False
    if user and user.is_active:
        password_valid = await verify_password_async(credentials.password, user.password_hash)

    if not password_valid:
        logger.warning(f"Invalid credentials for username: {username}")
        raise _unauthorized("Invalid username or password")

    user.last_login = datetime.utcnow()
    await db.commit()

    logger.info(f"User logged in successfully: {username}")
    return {**create_token_pair(user), "user": user.to_dict()}


@router.post("/refresh")
@limiter.limit(LOGIN_LIMIT)
async def refresh(
    request: Request,  # Required by slowapi
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
):
    user = await user_from_token(body.refresh_token, db, token_type="refresh")
    if user is None:
        raise _unauthorized("Invalid or expired refresh token")
    return create_token_pair(user)


@router.get("/me")
async def me(current_user: User = Depends(get_current_user)):
    return {"success": True, "data": current_user.to_dict()}
