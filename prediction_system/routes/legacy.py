"""
prediction_system/routes/legacy.py
Chat-bot compatible prediction routes

Every response is HTTP 200 plain text: chat bots relay the body verbatim
and treat any other status as an outage.

Acting principal: the bearer-token user when present. Otherwise, while
LEGACY_TRUST_CHANNEL_OWNER is on, calls act as the channel's own account.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.config.feature_flags import feature_flags
from prediction_system.database import get_db
from prediction_system.errors import PredictionErrorKind, StorageFailure, log_storage_failure
from prediction_system.orm.prediction_session import SessionStatus
from prediction_system.orm.user import User
from prediction_system.rate_limit import limiter, ADMIN_LIMIT, PREDICTION_LIMIT, READ_LIMIT
from prediction_system.rbac.auth import extract_bearer_token, user_from_token
from prediction_system.rbac.channel_permissions import PrivilegeLevel, level_of
from prediction_system.services.channel_registry import ChannelNameError, MembershipChange, get_or_create_channel
from prediction_system.services.identity_service import normalize_username
from prediction_system.services.prediction_format import format_hint
from prediction_system.services.session_coordinator import SessionCoordinator, TransitionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prediction", tags=["Legacy"])


def reply(message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=200)


async def resolve_legacy_actor(request: Request, channel: str, db: AsyncSession) -> Optional[User]:
    user = await user_from_token(extract_bearer_token(request), db)
    if user is not None:
        return user
    if not feature_flags.LEGACY_TRUST_CHANNEL_OWNER:
        return None
    try:
        owner_channel = await get_or_create_channel(db, channel)
    except ChannelNameError:
        return None
    except SQLAlchemyError as e:
        await db.rollback()
        raise log_storage_failure(e, "resolve_legacy_actor")
    return owner_channel.owner


def common_failure(result: TransitionResult, channel: str) -> Optional[str]:
    """Messages shared by every route; None when the route must decide."""
    if result.error == PredictionErrorKind.PERMISSION_DENIED:
        return f"You are not allowed to do that in {channel}'s Prediction System."
    if result.error == PredictionErrorKind.CHANNEL_INACTIVE:
        return f"{channel}'s Prediction System is inactive."
    if result.error == PredictionErrorKind.INVALID_CHANNEL_NAME:
        return f"{result.message}."
    return None


def invalid_format(username: str, result: TransitionResult) -> str:
    max_score = result.details.get("max_score")
    return f"Prediction format is invalid for {username}. {format_hint(max_score)}"


@router.get("/", response_class=PlainTextResponse)
async def alive():
    return reply("I am alive!")


async def run_open(request: Request, channel: str, db: AsyncSession) -> PlainTextResponse:
    try:
        actor = await resolve_legacy_actor(request, channel, db)
        result = await SessionCoordinator(db).open(channel, actor)
    except StorageFailure:
        return reply("Error opening prediction. Please try again.")

    if result.ok:
        return reply("New Prediction is now opened, and all previous predictions have been cleared!")
    return reply(common_failure(result, channel) or "Error opening prediction. Please try again.")


@router.get("/{channel}/open", response_class=PlainTextResponse)
@limiter.limit(ADMIN_LIMIT)
async def open_prediction(request: Request, channel: str, db: AsyncSession = Depends(get_db)):
    return await run_open(request, channel, db)


@router.get("/{channel}/add", response_class=PlainTextResponse)
@limiter.limit(PREDICTION_LIMIT)
async def add_prediction(
    request: Request,
    channel: str,
    username: Optional[str] = None,
    prediction: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    if not username or not prediction:
        return reply("Please provide username and prediction with format: xx-xx. Example: !addpredict 13-9")

    try:
        result = await SessionCoordinator(db).submit(channel, username, prediction)
    except StorageFailure:
        return reply("Error adding prediction. Please try again.")

    if result.ok:
        return reply(f"Prediction added successfully for {username}. Your prediction: {result.entry.prediction}")

    if result.error == PredictionErrorKind.NO_ACTIVE_SESSION:
        return reply("No active prediction session. Please wait for one to be opened.")
    if result.error == PredictionErrorKind.INVALID_TRANSITION:
        return reply("Predictions have been closed!")
    if result.error == PredictionErrorKind.INVALID_FORMAT:
        return reply(invalid_format(username, result))
    if result.error == PredictionErrorKind.DUPLICATE_ENTRY:
        return reply(f"{username}: You have already submitted your prediction: {result.existing_value}")
    if result.error == PredictionErrorKind.INVALID_USERNAME:
        return reply("Please provide username and prediction with format: xx-xx. Example: !addpredict 13-9")
    return reply(common_failure(result, channel) or "Error adding prediction. Please try again.")


async def run_close(request: Request, channel: str, db: AsyncSession) -> PlainTextResponse:
    try:
        actor = await resolve_legacy_actor(request, channel, db)
        result = await SessionCoordinator(db).close(channel, actor)
    except StorageFailure:
        return reply("Error closing prediction. Please try again.")

    if result.ok:
        return reply("Predictions have been closed!")
    if result.error == PredictionErrorKind.NO_ACTIVE_SESSION:
        return reply("No active prediction to close.")
    if result.error == PredictionErrorKind.INVALID_TRANSITION:
        return reply("Prediction is already closed.")
    return reply(common_failure(result, channel) or "Error closing prediction. Please try again.")


@router.get("/{channel}/close", response_class=PlainTextResponse)
@limiter.limit(ADMIN_LIMIT)
async def close_prediction(request: Request, channel: str, db: AsyncSession = Depends(get_db)):
    return await run_close(request, channel, db)


@router.get("/{channel}/list", response_class=PlainTextResponse)
@limiter.limit(READ_LIMIT)
async def list_predictions(request: Request, channel: str, db: AsyncSession = Depends(get_db)):
    try:
        result = await SessionCoordinator(db).list_entries(channel)
    except StorageFailure:
        return reply("Error retrieving predictions.")

    if result.error == PredictionErrorKind.INVALID_CHANNEL_NAME:
        return reply(common_failure(result, channel))
    if not result.ok or not result.entries:
        return reply(f"Predictions are empty for channel, {channel}.")

    listing = ", ".join(f"{entry.username}: {entry.prediction}" for entry in result.entries)
    return reply(f"[Current Predictions] {listing}")


@router.get("/{channel}/status", response_class=PlainTextResponse)
@limiter.limit(READ_LIMIT)
async def prediction_status(request: Request, channel: str, db: AsyncSession = Depends(get_db)):
    try:
        result = await SessionCoordinator(db).status(channel)
    except StorageFailure:
        return reply("Error checking prediction status.")

    if result.error == PredictionErrorKind.INVALID_CHANNEL_NAME:
        return reply(common_failure(result, channel))
    if result.status == SessionStatus.OPEN:
        return reply("Predictions are currently open.")
    return reply("Predictions are currently closed.")


@router.get("/{channel}/edit", response_class=PlainTextResponse)
@limiter.limit(PREDICTION_LIMIT)
async def edit_prediction(
    request: Request,
    channel: str,
    username: Optional[str] = None,
    prediction: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    if not username or not prediction:
        return reply("Please provide username and prediction.")

    try:
        actor = await resolve_legacy_actor(request, channel, db)
        result = await SessionCoordinator(db).edit(channel, username, prediction, actor)
    except StorageFailure:
        return reply("Error editing prediction. Please try again.")

    if result.ok:
        return reply(f"Prediction edited successfully for {username}. New prediction: {result.entry.prediction}")

    if result.error == PredictionErrorKind.NO_ACTIVE_SESSION:
        return reply("No active prediction session.")
    if result.error == PredictionErrorKind.INVALID_TRANSITION:
        return reply(f"{username}: Predictions are closed. You cannot edit predictions.")
    if result.error == PredictionErrorKind.INVALID_FORMAT:
        return reply(invalid_format(username, result))
    if result.error == PredictionErrorKind.ENTRY_NOT_FOUND:
        return reply(f"Prediction for {username} is not found.")
    if result.error == PredictionErrorKind.INVALID_USERNAME:
        return reply("Please provide username and prediction.")
    return reply(common_failure(result, channel) or "Error editing prediction. Please try again.")


@router.get("/{channel}/result", response_class=PlainTextResponse)
@limiter.limit(ADMIN_LIMIT)
async def prediction_result(
    request: Request,
    channel: str,
    result: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    actual_result = (result or "").strip()
    if not actual_result:
        return reply("Please provide the actual result.")

    try:
        actor = await resolve_legacy_actor(request, channel, db)
        outcome = await SessionCoordinator(db).resolve(channel, actual_result, actor)
    except StorageFailure:
        return reply("Error setting prediction result.")

    if outcome.ok:
        if outcome.winners:
            winners = ", ".join(entry.username for entry in outcome.winners)
            return reply(f"[Prediction Result] Winners: {winners}. Actual Result: {outcome.session.actual_result}")
        return reply(f"[Prediction Result] No winners. Actual Result: {outcome.session.actual_result}")

    if outcome.error == PredictionErrorKind.NO_ACTIVE_SESSION:
        return reply("No prediction to resolve.")
    if outcome.error == PredictionErrorKind.ALREADY_RESOLVED:
        return reply(f"Prediction has already been resolved. Actual Result: {outcome.details.get('actual_result')}")
    if outcome.error == PredictionErrorKind.INVALID_TRANSITION:
        if outcome.details.get("current_status") == SessionStatus.OPEN.value:
            return reply("Predictions are still open. Results will be available after closing predictions.")
        return reply("No prediction to resolve.")
    return reply(common_failure(outcome, channel) or "Error setting prediction result.")


# ================= ADMIN =================

def submitted_by(channel: str, result: TransitionResult, actor: User) -> str:
    level = level_of(result.channel, actor)
    if level == PrivilegeLevel.OWNER:
        return ""
    if level == PrivilegeLevel.ADMIN:
        return f" by {channel}'s Prediction System Admin, {actor.username}"
    return f" by {channel}'s Mod, {actor.username}"


async def run_add_for(
    request: Request,
    channel: str,
    target: Optional[str],
    prediction: Optional[str],
    db: AsyncSession,
) -> PlainTextResponse:
    target_username = normalize_username(target)
    if not target_username or not prediction:
        return reply("Please provide a prediction with the format: xx-xx. Example: !fpredict username 13-9")

    try:
        actor = await resolve_legacy_actor(request, channel, db)
        if actor is None:
            return reply(f"You are not allowed to do that in {channel}'s Prediction System.")
        result = await SessionCoordinator(db).submit(channel, target_username, prediction, actor=actor)
    except StorageFailure:
        return reply("Error adding prediction. Please try again.")

    if result.ok:
        return reply(
            f"Prediction added successfully for {target_username}{submitted_by(channel, result, actor)}. "
            f"Prediction: {result.entry.prediction}"
        )

    if result.error == PredictionErrorKind.NO_ACTIVE_SESSION:
        return reply("No active prediction session. Please wait for one to be opened.")
    if result.error == PredictionErrorKind.INVALID_TRANSITION:
        return reply("Predictions have been closed!")
    if result.error == PredictionErrorKind.INVALID_FORMAT:
        return reply(invalid_format(target_username, result))
    if result.error == PredictionErrorKind.DUPLICATE_ENTRY:
        return reply(f"{target_username}: You have already submitted your prediction: {result.existing_value}")
    return reply(common_failure(result, channel) or "Error adding prediction. Please try again.")


@router.get("/{channel}/admin/predict", response_class=PlainTextResponse)
@limiter.limit(ADMIN_LIMIT)
async def admin_predict(
    request: Request,
    channel: str,
    command: Optional[str] = None,
    to_username: Optional[str] = Query(None, alias="toUsername"),
    prediction: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Chat-bot admin command: open, close, or fadd (submit for another participant)."""
    if command == "open":
        return await run_open(request, channel, db)
    if command == "close":
        return await run_close(request, channel, db)
    if command == "fadd":
        return await run_add_for(request, channel, to_username, prediction, db)
    return reply("Invalid admin command. Use !predictadmin open/close/fadd")


@router.get("/{channel}/admin/addAdmin", response_class=PlainTextResponse)
@limiter.limit(ADMIN_LIMIT)
async def add_admin(
    request: Request,
    channel: str,
    username: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    admin_username = normalize_username(username)
    if not admin_username:
        return reply("Please provide a username.")

    try:
        actor = await resolve_legacy_actor(request, channel, db)
        result = await SessionCoordinator(db).add_admin(channel, admin_username, actor)
    except StorageFailure:
        return reply("Error adding admin.")

    if result.ok and result.membership_change == MembershipChange.ALREADY_PRESENT:
        return reply(f"Admin {admin_username} is already in {channel}'s Prediction System!")
    if result.ok:
        return reply(f"Admin {admin_username} added successfully into {channel}'s Prediction System!")
    return reply(common_failure(result, channel) or "Error adding admin.")


@router.get("/{channel}/admin/removeAdmin", response_class=PlainTextResponse)
@limiter.limit(ADMIN_LIMIT)
async def remove_admin(
    request: Request,
    channel: str,
    username: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    admin_username = normalize_username(username)
    if not admin_username:
        return reply("Please provide a username.")

    try:
        actor = await resolve_legacy_actor(request, channel, db)
        result = await SessionCoordinator(db).remove_admin(channel, admin_username, actor)
    except StorageFailure:
        return reply("Error removing admin.")

    if result.ok and result.membership_change == MembershipChange.NOT_PRESENT:
        return reply(f"Admin {admin_username} is not in {channel}'s Prediction System!")
    if result.ok:
        return reply(f"Admin {admin_username} removed successfully into {channel}'s Prediction System!.")
    return reply(common_failure(result, channel) or "Error removing admin.")


@router.get("/{channel}/admin/list", response_class=PlainTextResponse)
@limiter.limit(READ_LIMIT)
async def list_admins(request: Request, channel: str, db: AsyncSession = Depends(get_db)):
    try:
        result = await SessionCoordinator(db).list_admins(channel)
    except StorageFailure:
        return reply("Error retrieving admin list.")

    if not result.ok:
        return reply(common_failure(result, channel) or "Error retrieving admin list.")
    if not result.members:
        return reply(f"{channel}'s Prediction Admins: None")
    return reply(f"{channel}'s Prediction Admins: {', '.join(result.members)}")
