"""
Prediction Session Service

State machine for one round of predictions in a channel.

State Flow: open → closed → resolved
            open → cancelled (superseded by a newer session)

Transitions mutate loaded rows and flush; they never commit. The
coordinator owns the transaction, the channel lock and notification.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.errors import PredictionErrorKind
from prediction_system.orm.channel import Channel
from prediction_system.orm.prediction_session import (
    PredictionSession, PredictionEntry, SessionStatus, GameType
)
from prediction_system.orm.user import User
from prediction_system.services.prediction_format import is_valid_prediction
from prediction_system.services.channel_registry import refresh_channel_stats

logger = logging.getLogger(__name__)

HISTORY_DEFAULT_LIMIT = 20
HISTORY_MAX_LIMIT = 100
RESULT_MAX_LENGTH = 20

# Valid state transitions
TRANSITIONS = {
    SessionStatus.OPEN: [SessionStatus.CLOSED, SessionStatus.CANCELLED],
    SessionStatus.CLOSED: [SessionStatus.RESOLVED],
    SessionStatus.RESOLVED: [],
    SessionStatus.CANCELLED: [],
}


class PredictionError(Exception):
    """A recoverable transition failure; the coordinator turns it into a result."""

    def __init__(self, kind: PredictionErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(message)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS.get(current, [])


def _require_transition(session: PredictionSession, target: SessionStatus) -> None:
    current = session.status_enum
    if not can_transition(current, target):
        raise PredictionError(
            PredictionErrorKind.INVALID_TRANSITION,
            f"Cannot move session {session.id} from {current.value} to {target.value}",
            {"current_status": current.value, "target_status": target.value},
        )


def _normalize_game_type(game_type: Optional[str]) -> str:
    if not game_type:
        return GameType.CS2.value
    try:
        return GameType(game_type.strip().lower()).value
    except ValueError:
        return GameType.OTHER.value


# ================= QUERIES =================

async def get_session(db: AsyncSession, session_id: Optional[int]) -> Optional[PredictionSession]:
    """Any session by id, superseded ones included."""
    if session_id is None:
        return None
    result = await db.execute(
        select(PredictionSession)
        .where(PredictionSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_current_session(db: AsyncSession, channel: Channel) -> Optional[PredictionSession]:
    return await get_session(db, channel.current_session_id)


async def require_current_session(db: AsyncSession, channel: Channel) -> PredictionSession:
    session = await get_current_session(db, channel)
    if session is None:
        raise PredictionError(
            PredictionErrorKind.NO_ACTIVE_SESSION,
            f"No active prediction session in channel '{channel.name}'",
        )
    return session


async def list_entries(db: AsyncSession, channel: Channel) -> List[PredictionEntry]:
    """Entries of the current session in submission order; may be empty."""
    session = await require_current_session(db, channel)
    return list(session.entries)


async def session_status(db: AsyncSession, channel: Channel) -> Optional[SessionStatus]:
    session = await get_current_session(db, channel)
    return session.status_enum if session else None


async def history(db: AsyncSession, channel: Channel, limit: int = HISTORY_DEFAULT_LIMIT) -> List[PredictionSession]:
    """Past and present sessions of a channel, newest first."""
    limit = max(1, min(limit, HISTORY_MAX_LIMIT))
    result = await db.execute(
        select(PredictionSession)
        .where(PredictionSession.channel_id == channel.id)
        .order_by(PredictionSession.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def find_entry(db: AsyncSession, session_id: int, user_id: int) -> Optional[PredictionEntry]:
    result = await db.execute(
        select(PredictionEntry).where(
            PredictionEntry.session_id == session_id,
            PredictionEntry.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


# ================= TRANSITIONS =================

async def open_session(
    db: AsyncSession,
    channel: Channel,
    actor: User,
    title: Optional[str] = None,
    description: Optional[str] = None,
    game_type: Optional[str] = None,
) -> Tuple[PredictionSession, Optional[PredictionSession]]:
    """
    Start a new session and point the channel at it.

    An open predecessor is cancelled in the same flush. A closed or
    resolved predecessor simply becomes history.

    Returns (new_session, cancelled_session_or_None).
    """
    now = datetime.utcnow()
    cancelled = None

    previous = await get_current_session(db, channel)
    if previous is not None and can_transition(previous.status_enum, SessionStatus.CANCELLED):
        previous.status = SessionStatus.CANCELLED.value
        previous.cancelled_at = now
        cancelled = previous
        logger.info(f"[OPEN] session {previous.id} in channel '{channel.name}' cancelled by a new session")

    session = PredictionSession(
        channel_id=channel.id,
        title=(title or "").strip() or "Prediction Session",
        description=description,
        game_type=_normalize_game_type(game_type),
        status=SessionStatus.OPEN.value,
        max_score=channel.max_score,
        opened_by_id=actor.id,
        opened_at=now,
        entries=[],
    )
    db.add(session)
    await db.flush()

    channel.current_session_id = session.id
    channel.total_sessions = (channel.total_sessions or 0) + 1
    channel.last_activity = now
    await db.flush()

    logger.info(f"[OPEN] session {session.id} opened in channel '{channel.name}' by user {actor.id}")
    return session, cancelled


async def close_session(db: AsyncSession, channel: Channel, actor: User) -> PredictionSession:
    session = await require_current_session(db, channel)
    _require_transition(session, SessionStatus.CLOSED)

    now = datetime.utcnow()
    session.status = SessionStatus.CLOSED.value
    session.closed_at = now
    session.closed_by_id = actor.id
    channel.last_activity = now
    await db.flush()

    logger.info(f"[CLOSE] session {session.id} closed in channel '{channel.name}' by user {actor.id}")
    return session


async def claim_open_session(db: AsyncSession, session: PredictionSession) -> None:
    """
    Re-check the session status in the same write that takes the row lock.

    A close, cancel or resolve committed after the session was read makes
    the guard match no row, and the entry is refused.
    """
    result = await db.execute(
        update(PredictionSession)
        .where(
            PredictionSession.id == session.id,
            PredictionSession.status == SessionStatus.OPEN.value,
        )
        .values(total_entries=PredictionSession.total_entries)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = await get_session(db, session.id)
        raise PredictionError(
            PredictionErrorKind.INVALID_TRANSITION,
            "Predictions have been closed",
            {"current_status": current.status if current else None},
        )


async def refresh_session_stats(db: AsyncSession, session: PredictionSession) -> None:
    result = await db.execute(
        select(
            func.count(PredictionEntry.id),
            func.count(func.distinct(PredictionEntry.user_id)),
        ).where(PredictionEntry.session_id == session.id)
    )
    session.total_entries, session.unique_users = result.one()


async def submit_entry(
    db: AsyncSession,
    channel: Channel,
    participant: User,
    value: str,
) -> Tuple[PredictionSession, PredictionEntry]:
    """
    Add the participant's entry to the open session.

    The storage layer's (session, user) uniqueness is the final word; a
    racing duplicate surfaces as IntegrityError from the flush.
    """
    session = await require_current_session(db, channel)
    if not session.is_open():
        raise PredictionError(
            PredictionErrorKind.INVALID_TRANSITION,
            "Predictions have been closed",
            {"current_status": session.status},
        )

    value = (value or "").strip()
    if not is_valid_prediction(value, session.max_score):
        raise PredictionError(
            PredictionErrorKind.INVALID_FORMAT,
            f"Prediction '{value}' is invalid for max score {session.max_score}",
            {"max_score": session.max_score},
        )

    existing = session.entry_for(participant.id)
    if existing is not None:
        raise PredictionError(
            PredictionErrorKind.DUPLICATE_ENTRY,
            f"{participant.username} already submitted {existing.prediction}",
            {"existing_value": existing.prediction},
        )

    await claim_open_session(db, session)

    now = datetime.utcnow()
    entry = PredictionEntry(
        user_id=participant.id,
        username=participant.username,
        prediction=value,
        submitted_at=now,
    )
    session.entries.append(entry)
    await db.flush()

    await refresh_session_stats(db, session)
    await refresh_channel_stats(db, channel)
    channel.last_activity = now
    await db.flush()

    logger.info(f"[SUBMIT] {participant.username} predicted {value} in session {session.id}")
    return session, entry


async def edit_entry(
    db: AsyncSession,
    channel: Channel,
    participant: User,
    new_value: str,
) -> Tuple[PredictionSession, PredictionEntry]:
    session = await require_current_session(db, channel)

    editable = [SessionStatus.OPEN]
    if channel.allow_edit_after_close:
        editable.append(SessionStatus.CLOSED)
    if session.status_enum not in editable:
        raise PredictionError(
            PredictionErrorKind.INVALID_TRANSITION,
            "Predictions are closed and can no longer be edited",
            {"current_status": session.status},
        )

    new_value = (new_value or "").strip()
    if not is_valid_prediction(new_value, session.max_score):
        raise PredictionError(
            PredictionErrorKind.INVALID_FORMAT,
            f"Prediction '{new_value}' is invalid for max score {session.max_score}",
            {"max_score": session.max_score},
        )

    entry = session.entry_for(participant.id)
    if entry is None:
        raise PredictionError(
            PredictionErrorKind.ENTRY_NOT_FOUND,
            f"Prediction for {participant.username} is not found",
        )

    now = datetime.utcnow()
    previous_value = entry.prediction
    entry.prediction = new_value
    entry.edited_at = now
    channel.last_activity = now
    await db.flush()

    logger.info(
        f"[EDIT] {participant.username} changed {previous_value} to {new_value} in session {session.id}"
    )
    return session, entry


def compute_winners(session: PredictionSession, actual_result: str) -> List[PredictionEntry]:
    """Exact string match against the stored prediction, in submission order."""
    return [entry for entry in session.entries if entry.prediction == actual_result]


async def resolve_session(
    db: AsyncSession,
    channel: Channel,
    actual_result: str,
    actor: User,
) -> Tuple[PredictionSession, List[PredictionEntry]]:
    """
    Record the actual result and flag winners. One-shot: winner flags set
    here are never cleared.
    """
    session = await require_current_session(db, channel)

    status = session.status_enum
    if status == SessionStatus.RESOLVED:
        raise PredictionError(
            PredictionErrorKind.ALREADY_RESOLVED,
            f"Session {session.id} was already resolved with {session.actual_result}",
            {"actual_result": session.actual_result},
        )
    _require_transition(session, SessionStatus.RESOLVED)

    actual_result = (actual_result or "").strip()[:RESULT_MAX_LENGTH]
    winners = compute_winners(session, actual_result)
    for entry in winners:
        entry.is_winner = True

    now = datetime.utcnow()
    session.status = SessionStatus.RESOLVED.value
    session.actual_result = actual_result
    session.resolved_at = now
    session.resolved_by_id = actor.id
    session.winners_count = len(winners)
    channel.last_activity = now
    await db.flush()

    logger.info(
        f"[RESOLVE] session {session.id} resolved with {actual_result}: "
        f"{len(winners)} winner(s) in channel '{channel.name}'"
    )
    return session, winners
