"""
Session Coordinator

Single entry point for every channel operation:

    resolve channel → resolve principals → lock → permission check
    → transition → commit → notify

Recoverable failures come back as TransitionResult values. Storage
failures are raised as StorageFailure after the transaction is rolled back.
Events go out only after a successful commit; a denied or failed request
mutates nothing and emits nothing.
"""
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.errors import PredictionErrorKind, api_error_for, log_storage_failure
from prediction_system.orm.channel import Channel
from prediction_system.orm.prediction_session import PredictionSession, PredictionEntry, SessionStatus
from prediction_system.orm.user import User
from prediction_system.rbac.channel_permissions import ChannelAction, can_perform, level_of
from prediction_system.realtime.events import EventNotifier, PredictionEventType, build_event, get_notifier
from prediction_system.services import channel_registry as registry
from prediction_system.services import prediction_session_service as sessions
from prediction_system.services.channel_registry import ChannelNameError, ChannelSettingsError, MembershipChange
from prediction_system.services.identity_service import get_or_create_users, get_user, normalize_username
from prediction_system.services.locks import channel_lock
from prediction_system.services.prediction_session_service import PredictionError

logger = logging.getLogger(__name__)

Users = Dict[str, User]
Events = List[Dict[str, Any]]


@dataclass
class TransitionResult:
    """Outcome of one coordinated operation."""
    ok: bool
    operation: str
    error: Optional[PredictionErrorKind] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    channel: Optional[Channel] = None
    session: Optional[PredictionSession] = None
    cancelled_session: Optional[PredictionSession] = None
    entry: Optional[PredictionEntry] = None
    entries: List[PredictionEntry] = field(default_factory=list)
    winners: List[PredictionEntry] = field(default_factory=list)
    sessions: List[PredictionSession] = field(default_factory=list)
    membership_change: Optional[MembershipChange] = None
    members: List[str] = field(default_factory=list)
    status: Optional[SessionStatus] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        operation: str,
        kind: PredictionErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "TransitionResult":
        return cls(ok=False, operation=operation, error=kind, message=message, details=details or {})

    @property
    def existing_value(self) -> Optional[str]:
        """The stored prediction a duplicate submission collided with."""
        return self.details.get("existing_value")

    def raise_for_error(self) -> "TransitionResult":
        if not self.ok:
            raise api_error_for(self.error, self.message, self.details or None)
        return self


def principal_id(user: Optional[User]) -> Optional[int]:
    """Primary key without touching attributes a rollback may have expired."""
    if user is None:
        return None
    identity = inspect(user).identity
    return identity[0] if identity else user.id


Check = Callable[[Channel, Optional[User], Users], bool]
Apply = Callable[[Channel, Optional[User], Users], Awaitable[Tuple[TransitionResult, Events]]]
OnConflict = Callable[[], Awaitable[TransitionResult]]


class SessionCoordinator:
    """Coordinates one request's worth of channel work on a database session."""

    def __init__(self, db: AsyncSession, notifier: Optional[EventNotifier] = None):
        self.db = db
        self.notifier = notifier or get_notifier()

    # ================= PLUMBING =================

    async def _channel_or_failure(self, operation: str, channel_name: str):
        try:
            return await registry.get_or_create_channel(self.db, channel_name), None
        except ChannelNameError as e:
            return None, TransitionResult.failure(operation, PredictionErrorKind.INVALID_CHANNEL_NAME, str(e))

    async def _transition(
        self,
        operation: str,
        channel_name: str,
        actor: Optional[User],
        check: Check,
        apply: Apply,
        usernames: Tuple[str, ...] = (),
        serialize: bool = True,
        on_conflict: Optional[OnConflict] = None,
    ) -> TransitionResult:
        actor_id = principal_id(actor)
        events: Events = []

        try:
            channel, failed = await self._channel_or_failure(operation, channel_name)
            if failed:
                return failed
            channel_id = channel.id
            name = channel.name

            users: Users = {}
            if usernames:
                try:
                    users = await get_or_create_users(self.db, list(usernames))
                except ValueError as e:
                    return TransitionResult.failure(operation, PredictionErrorKind.INVALID_USERNAME, str(e))

            lock = channel_lock(name) if serialize else contextlib.nullcontext()
            async with lock:
                channel = await registry.load_channel(self.db, channel_id, for_update=serialize)
                actor = await get_user(self.db, actor_id) if actor_id is not None else None

                if not channel.is_active:
                    await self.db.rollback()
                    return TransitionResult.failure(
                        operation, PredictionErrorKind.CHANNEL_INACTIVE,
                        f"Channel '{name}' is inactive",
                    )

                if not check(channel, actor, users):
                    level = level_of(channel, actor)
                    await self.db.rollback()
                    return TransitionResult.failure(
                        operation, PredictionErrorKind.PERMISSION_DENIED,
                        f"Insufficient privilege in channel '{name}' for {operation}",
                        {"level": level.name.lower()},
                    )

                try:
                    result, events = await apply(channel, actor, users)
                except PredictionError as e:
                    await self.db.rollback()
                    return TransitionResult.failure(operation, e.kind, e.message, e.details)

                await self.db.commit()

        except IntegrityError as e:
            await self.db.rollback()
            if on_conflict is None:
                raise log_storage_failure(e, operation)
            return await on_conflict()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise log_storage_failure(e, operation)

        await self.notifier.notify_all(events)
        return result

    async def _read(self, operation: str, channel_name: str, reader) -> TransitionResult:
        try:
            channel, failed = await self._channel_or_failure(operation, channel_name)
            if failed:
                return failed
            channel = await registry.load_channel(self.db, channel.id)
            return await reader(channel)
        except PredictionError as e:
            return TransitionResult.failure(operation, e.kind, e.message, e.details)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise log_storage_failure(e, operation)

    @staticmethod
    def _allows(action: ChannelAction) -> Check:
        def check(channel, actor, users):
            return can_perform(channel, actor, action)
        return check

    # ================= SESSION LIFECYCLE =================

    async def open(
        self,
        channel_name: str,
        actor: Optional[User],
        title: Optional[str] = None,
        description: Optional[str] = None,
        game_type: Optional[str] = None,
    ) -> TransitionResult:
        async def apply(channel, actor, users):
            session, cancelled = await sessions.open_session(
                self.db, channel, actor, title=title, description=description, game_type=game_type
            )
            events = []
            if cancelled is not None:
                events.append(build_event(
                    PredictionEventType.CANCELLED, channel.name, cancelled.id,
                    {"superseded_by": session.id, "total_entries": cancelled.total_entries},
                ))
            events.append(build_event(
                PredictionEventType.OPENED, channel.name, session.id,
                {
                    "title": session.title,
                    "game_type": session.game_type,
                    "max_score": session.max_score,
                    "opened_by": actor.username,
                    "cancelled_session_id": cancelled.id if cancelled else None,
                },
            ))
            result = TransitionResult(
                ok=True, operation="open", channel=channel, session=session,
                cancelled_session=cancelled, status=SessionStatus.OPEN,
            )
            return result, events

        return await self._transition("open", channel_name, actor, self._allows(ChannelAction.OPEN_SESSION), apply)

    async def close(self, channel_name: str, actor: Optional[User]) -> TransitionResult:
        async def apply(channel, actor, users):
            session = await sessions.close_session(self.db, channel, actor)
            event = build_event(
                PredictionEventType.CLOSED, channel.name, session.id,
                {"total_entries": session.total_entries, "closed_by": actor.username},
            )
            result = TransitionResult(
                ok=True, operation="close", channel=channel, session=session, status=SessionStatus.CLOSED,
            )
            return result, [event]

        return await self._transition("close", channel_name, actor, self._allows(ChannelAction.CLOSE_SESSION), apply)

    async def submit(
        self,
        channel_name: str,
        username: str,
        value: str,
        actor: Optional[User] = None,
    ) -> TransitionResult:
        """Add an entry for a participant; a moderator and up may submit for someone else."""
        participant_name = normalize_username(username)
        attempt: Dict[str, Any] = {}

        def check(channel, actor, users):
            participant = users[participant_name]
            if actor is None or actor.id == participant.id:
                return can_perform(channel, participant, ChannelAction.SUBMIT_ENTRY)
            return can_perform(channel, actor, ChannelAction.SUBMIT_ANY_ENTRY)

        async def apply(channel, actor, users):
            participant = users[participant_name]
            attempt["session_id"] = channel.current_session_id
            attempt["user_id"] = participant.id
            session, entry = await sessions.submit_entry(self.db, channel, participant, value)
            event = build_event(
                PredictionEventType.ADDED, channel.name, session.id,
                {
                    "username": entry.username,
                    "prediction": entry.prediction,
                    "total_entries": session.total_entries,
                    "submitted_by": actor.username if actor is not None else entry.username,
                },
            )
            result = TransitionResult(
                ok=True, operation="submit", channel=channel, session=session,
                entry=entry, status=SessionStatus.OPEN,
            )
            return result, [event]

        async def on_conflict():
            # Lost the race on the (session, user) unique constraint
            existing = await sessions.find_entry(self.db, attempt.get("session_id"), attempt.get("user_id"))
            if existing is None:
                raise log_storage_failure(RuntimeError("entry insert rejected without a conflicting row"), "submit")
            logger.warning(f"[SUBMIT RACE] duplicate entry for {participant_name} in session {existing.session_id}")
            return TransitionResult.failure(
                "submit", PredictionErrorKind.DUPLICATE_ENTRY,
                f"{participant_name} already submitted {existing.prediction}",
                {"existing_value": existing.prediction},
            )

        return await self._transition(
            "submit", channel_name, actor, check, apply,
            usernames=(participant_name,),
            serialize=False,
            on_conflict=on_conflict,
        )

    async def edit(
        self,
        channel_name: str,
        username: str,
        new_value: str,
        actor: Optional[User],
    ) -> TransitionResult:
        """Edit a participant's entry; the actor is that participant or a moderator and up."""
        participant_name = normalize_username(username)

        def check(channel, actor, users):
            participant = users[participant_name]
            if actor is not None and actor.id == participant.id:
                return can_perform(channel, actor, ChannelAction.EDIT_OWN_ENTRY)
            return can_perform(channel, actor, ChannelAction.EDIT_ANY_ENTRY)

        async def apply(channel, actor, users):
            participant = users[participant_name]
            previous = None
            current = await sessions.get_current_session(self.db, channel)
            if current is not None:
                existing = current.entry_for(participant.id)
                previous = existing.prediction if existing else None
            session, entry = await sessions.edit_entry(self.db, channel, participant, new_value)
            event = build_event(
                PredictionEventType.EDITED, channel.name, session.id,
                {
                    "username": entry.username,
                    "prediction": entry.prediction,
                    "previous_prediction": previous,
                },
            )
            result = TransitionResult(
                ok=True, operation="edit", channel=channel, session=session,
                entry=entry, status=session.status_enum,
            )
            return result, [event]

        return await self._transition("edit", channel_name, actor, check, apply, usernames=(participant_name,))

    async def resolve(self, channel_name: str, actual_result: str, actor: Optional[User]) -> TransitionResult:
        async def apply(channel, actor, users):
            session, winners = await sessions.resolve_session(self.db, channel, actual_result, actor)
            event = build_event(
                PredictionEventType.RESOLVED, channel.name, session.id,
                {
                    "actual_result": session.actual_result,
                    "winners": [entry.username for entry in winners],
                    "winners_count": len(winners),
                },
            )
            result = TransitionResult(
                ok=True, operation="resolve", channel=channel, session=session,
                winners=winners, status=SessionStatus.RESOLVED,
            )
            return result, [event]

        return await self._transition(
            "resolve", channel_name, actor, self._allows(ChannelAction.RESOLVE_SESSION), apply
        )

    # ================= READS =================

    async def list_entries(self, channel_name: str) -> TransitionResult:
        async def reader(channel):
            session = await sessions.require_current_session(self.db, channel)
            return TransitionResult(
                ok=True, operation="list", channel=channel, session=session,
                entries=list(session.entries), status=session.status_enum,
            )
        return await self._read("list", channel_name, reader)

    async def status(self, channel_name: str) -> TransitionResult:
        async def reader(channel):
            session = await sessions.get_current_session(self.db, channel)
            return TransitionResult(
                ok=True, operation="status", channel=channel, session=session,
                status=session.status_enum if session else None,
            )
        return await self._read("status", channel_name, reader)

    async def history(self, channel_name: str, limit: int = sessions.HISTORY_DEFAULT_LIMIT) -> TransitionResult:
        async def reader(channel):
            past = await sessions.history(self.db, channel, limit)
            return TransitionResult(ok=True, operation="history", channel=channel, sessions=past)
        return await self._read("history", channel_name, reader)

    async def get_session(self, session_id: int) -> TransitionResult:
        try:
            session = await sessions.get_session(self.db, session_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise log_storage_failure(e, "get_session")
        if session is None:
            return TransitionResult.failure(
                "get_session", PredictionErrorKind.NO_ACTIVE_SESSION, f"Session {session_id} not found"
            )
        return TransitionResult(ok=True, operation="get_session", session=session, status=session.status_enum)

    async def overview(self, channel_name: str) -> TransitionResult:
        async def reader(channel):
            data = await registry.get_channel_overview(self.db, channel)
            return TransitionResult(ok=True, operation="overview", channel=channel, data=data)
        return await self._read("overview", channel_name, reader)

    # ================= MEMBERSHIP =================

    async def _change_membership(
        self,
        operation: str,
        channel_name: str,
        username: str,
        actor: Optional[User],
        action: ChannelAction,
        change: Callable[[Channel, User, Optional[User]], MembershipChange],
        lister: Callable[[Channel], List[str]],
    ) -> TransitionResult:
        target_name = normalize_username(username)

        async def apply(channel, actor, users):
            outcome = change(channel, users[target_name], actor)
            await self.db.flush()
            result = TransitionResult(
                ok=True, operation=operation, channel=channel,
                membership_change=outcome, members=lister(channel),
                data={"username": target_name},
            )
            return result, []

        async def on_conflict():
            # A concurrent grant of the same role already landed
            logger.warning(f"[MEMBERSHIP RACE] {operation} for {target_name} resolved by a concurrent writer")
            channel = await registry.find_channel(self.db, channel_name)
            return TransitionResult(
                ok=True, operation=operation, channel=channel,
                membership_change=MembershipChange.ALREADY_PRESENT,
                members=lister(channel), data={"username": target_name},
            )

        return await self._transition(
            operation, channel_name, actor, self._allows(action), apply,
            usernames=(target_name,), on_conflict=on_conflict,
        )

    async def add_admin(self, channel_name: str, username: str, actor: Optional[User]) -> TransitionResult:
        return await self._change_membership(
            "add_admin", channel_name, username, actor, ChannelAction.MANAGE_ADMINS,
            lambda channel, user, by: registry.add_admin(channel, user, added_by=by),
            registry.list_admins,
        )

    async def remove_admin(self, channel_name: str, username: str, actor: Optional[User]) -> TransitionResult:
        return await self._change_membership(
            "remove_admin", channel_name, username, actor, ChannelAction.MANAGE_ADMINS,
            lambda channel, user, by: registry.remove_admin(channel, user),
            registry.list_admins,
        )

    async def add_moderator(self, channel_name: str, username: str, actor: Optional[User]) -> TransitionResult:
        return await self._change_membership(
            "add_moderator", channel_name, username, actor, ChannelAction.MANAGE_MODERATORS,
            lambda channel, user, by: registry.add_moderator(channel, user, added_by=by),
            registry.list_moderators,
        )

    async def remove_moderator(self, channel_name: str, username: str, actor: Optional[User]) -> TransitionResult:
        return await self._change_membership(
            "remove_moderator", channel_name, username, actor, ChannelAction.MANAGE_MODERATORS,
            lambda channel, user, by: registry.remove_moderator(channel, user),
            registry.list_moderators,
        )

    async def list_admins(self, channel_name: str) -> TransitionResult:
        async def reader(channel):
            return TransitionResult(ok=True, operation="list_admins", channel=channel, members=registry.list_admins(channel))
        return await self._read("list_admins", channel_name, reader)

    async def list_moderators(self, channel_name: str) -> TransitionResult:
        async def reader(channel):
            return TransitionResult(
                ok=True, operation="list_moderators", channel=channel, members=registry.list_moderators(channel)
            )
        return await self._read("list_moderators", channel_name, reader)

    # ================= SETTINGS =================

    async def update_settings(self, channel_name: str, actor: Optional[User], **changes) -> TransitionResult:
        async def apply(channel, actor, users):
            try:
                applied = registry.update_settings(channel, **changes)
            except ChannelSettingsError as e:
                raise PredictionError(PredictionErrorKind.INVALID_SETTINGS, str(e))
            await self.db.flush()
            return TransitionResult(ok=True, operation="update_settings", channel=channel, data=applied), []

        return await self._transition(
            "update_settings", channel_name, actor, self._allows(ChannelAction.UPDATE_SETTINGS), apply
        )

    async def deactivate(self, channel_name: str, actor: Optional[User]) -> TransitionResult:
        async def apply(channel, actor, users):
            registry.deactivate_channel(channel)
            await self.db.flush()
            return TransitionResult(ok=True, operation="deactivate", channel=channel), []

        return await self._transition(
            "deactivate", channel_name, actor, self._allows(ChannelAction.DEACTIVATE_CHANNEL), apply
        )
