"""
prediction_system/routes/channels.py
JSON prediction API

Standard response envelope:
{
    "success": true,
    "message": "...",
    "data": {...}
}

Domain failures surface as APIError bodies with the status their error
kind maps to (see errors.ERROR_KIND_STATUS).
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.database import get_db
from prediction_system.orm.user import User
from prediction_system.rate_limit import limiter, ADMIN_LIMIT, PREDICTION_LIMIT, READ_LIMIT
from prediction_system.rbac.auth import get_current_user
from prediction_system.schemas.predictions import (
    ChannelSettingsUpdate, EntryEditRequest, EntrySubmitRequest, MemberRequest,
    SessionOpenRequest, SessionResolveRequest,
)
from prediction_system.services.prediction_session_service import HISTORY_DEFAULT_LIMIT, HISTORY_MAX_LIMIT
from prediction_system.services.session_coordinator import SessionCoordinator, TransitionResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Predictions"])


def envelope(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data or {}}


def membership_payload(result: TransitionResult, role: str) -> Dict[str, Any]:
    return {
        "username": result.data.get("username"),
        "role": role,
        "change": result.membership_change.value if result.membership_change else None,
        "members": result.members,
    }


# ================= CHANNEL =================

@router.get("/channels/{name}")
@limiter.limit(READ_LIMIT)
async def get_channel(request: Request, name: str, db: AsyncSession = Depends(get_db)):
    result = (await SessionCoordinator(db).overview(name)).raise_for_error()
    return envelope("Channel retrieved", result.data)


@router.patch("/channels/{name}/settings")
@limiter.limit(ADMIN_LIMIT)
async def update_channel_settings(
    request: Request,
    name: str,
    body: ChannelSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    changes = body.model_dump(exclude_none=True)
    result = (await SessionCoordinator(db).update_settings(name, current_user, **changes)).raise_for_error()
    return envelope("Settings updated", {"settings": result.data})


@router.post("/channels/{name}/deactivate")
@limiter.limit(ADMIN_LIMIT)
async def deactivate_channel(
    request: Request,
    name: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    (await SessionCoordinator(db).deactivate(name, current_user)).raise_for_error()
    return envelope("Channel deactivated", {"name": name.lower(), "is_active": False})


# ================= SESSIONS =================

@router.post("/channels/{name}/sessions", status_code=status.HTTP_201_CREATED)
@limiter.limit(ADMIN_LIMIT)
async def open_session(
    request: Request,
    name: str,
    body: Optional[SessionOpenRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    body = body or SessionOpenRequest()
    result = (await SessionCoordinator(db).open(
        name, current_user, title=body.title, description=body.description, game_type=body.game_type
    )).raise_for_error()
    return envelope("Prediction session opened", {
        "session": result.session.to_dict(),
        "cancelled_session_id": result.cancelled_session.id if result.cancelled_session else None,
    })


@router.get("/channels/{name}/sessions")
@limiter.limit(READ_LIMIT)
async def session_history(
    request: Request,
    name: str,
    limit: int = Query(HISTORY_DEFAULT_LIMIT, ge=1, le=HISTORY_MAX_LIMIT),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).history(name, limit)).raise_for_error()
    return envelope("Session history retrieved", {
        "sessions": [session.to_dict() for session in result.sessions],
    })


@router.get("/channels/{name}/sessions/current")
@limiter.limit(READ_LIMIT)
async def current_session(request: Request, name: str, db: AsyncSession = Depends(get_db)):
    result = (await SessionCoordinator(db).status(name)).raise_for_error()
    return envelope("Current session retrieved", {
        "status": result.status.value if result.status else None,
        "session": result.session.to_dict() if result.session else None,
    })


@router.post("/channels/{name}/sessions/current/close")
@limiter.limit(ADMIN_LIMIT)
async def close_session(
    request: Request,
    name: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).close(name, current_user)).raise_for_error()
    return envelope("Predictions have been closed", {"session": result.session.to_dict()})


@router.post("/channels/{name}/sessions/current/resolve")
@limiter.limit(ADMIN_LIMIT)
async def resolve_session(
    request: Request,
    name: str,
    body: SessionResolveRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).resolve(name, body.actual_result, current_user)).raise_for_error()
    return envelope("Prediction session resolved", {
        "session": result.session.to_dict(),
        "winners": [entry.to_dict() for entry in result.winners],
    })


@router.get("/sessions/{session_id}")
@limiter.limit(READ_LIMIT)
async def get_session(request: Request, session_id: int, db: AsyncSession = Depends(get_db)):
    result = (await SessionCoordinator(db).get_session(session_id)).raise_for_error()
    return envelope("Session retrieved", {"session": result.session.to_dict(include_entries=True)})


# ================= ENTRIES =================

@router.get("/channels/{name}/sessions/current/entries")
@limiter.limit(READ_LIMIT)
async def list_entries(request: Request, name: str, db: AsyncSession = Depends(get_db)):
    result = (await SessionCoordinator(db).list_entries(name)).raise_for_error()
    return envelope("Entries retrieved", {
        "session_id": result.session.id,
        "status": result.status.value,
        "entries": [entry.to_dict() for entry in result.entries],
    })


@router.post("/channels/{name}/sessions/current/entries", status_code=status.HTTP_201_CREATED)
@limiter.limit(PREDICTION_LIMIT)
async def submit_entry(
    request: Request,
    name: str,
    body: EntrySubmitRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    participant = body.username or current_user.username
    result = (
        await SessionCoordinator(db).submit(name, participant, body.prediction, actor=current_user)
    ).raise_for_error()
    return envelope("Prediction added", {"session_id": result.session.id, "entry": result.entry.to_dict()})


@router.put("/channels/{name}/sessions/current/entries")
@limiter.limit(PREDICTION_LIMIT)
async def edit_entry(
    request: Request,
    name: str,
    body: EntryEditRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    participant = body.username or current_user.username
    result = (await SessionCoordinator(db).edit(name, participant, body.prediction, current_user)).raise_for_error()
    return envelope("Prediction edited", {"session_id": result.session.id, "entry": result.entry.to_dict()})


# ================= MEMBERSHIP =================

@router.get("/channels/{name}/admins")
@limiter.limit(READ_LIMIT)
async def list_admins(request: Request, name: str, db: AsyncSession = Depends(get_db)):
    result = (await SessionCoordinator(db).list_admins(name)).raise_for_error()
    return envelope("Admins retrieved", {"admins": result.members})


@router.post("/channels/{name}/admins")
@limiter.limit(ADMIN_LIMIT)
async def add_admin(
    request: Request,
    name: str,
    body: MemberRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).add_admin(name, body.username, current_user)).raise_for_error()
    return envelope("Admin membership updated", membership_payload(result, "admin"))


@router.delete("/channels/{name}/admins/{username}")
@limiter.limit(ADMIN_LIMIT)
async def remove_admin(
    request: Request,
    name: str,
    username: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).remove_admin(name, username, current_user)).raise_for_error()
    return envelope("Admin membership updated", membership_payload(result, "admin"))


@router.get("/channels/{name}/moderators")
@limiter.limit(READ_LIMIT)
async def list_moderators(request: Request, name: str, db: AsyncSession = Depends(get_db)):
    result = (await SessionCoordinator(db).list_moderators(name)).raise_for_error()
    return envelope("Moderators retrieved", {"moderators": result.members})


@router.post("/channels/{name}/moderators")
@limiter.limit(ADMIN_LIMIT)
async def add_moderator(
    request: Request,
    name: str,
    body: MemberRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).add_moderator(name, body.username, current_user)).raise_for_error()
    return envelope("Moderator membership updated", membership_payload(result, "moderator"))


@router.delete("/channels/{name}/moderators/{username}")
@limiter.limit(ADMIN_LIMIT)
async def remove_moderator(
    request: Request,
    name: str,
    username: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = (await SessionCoordinator(db).remove_moderator(name, username, current_user)).raise_for_error()
    return envelope("Moderator membership updated", membership_payload(result, "moderator"))
