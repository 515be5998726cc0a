"""
Tests for the prediction session state machine

Runs every transition through the coordinator against a real database so
permission checks, commits and notifications are covered together.
"""
import pytest
from sqlalchemy import select

from prediction_system.errors import PredictionErrorKind
from prediction_system.orm.prediction_session import PredictionEntry, PredictionSession, SessionStatus
from prediction_system.realtime.broadcast_adapter import BroadcastAdapter
from prediction_system.realtime.events import EventNotifier
from prediction_system.services.identity_service import get_or_create_user
from prediction_system.services.prediction_session_service import TRANSITIONS, can_transition
from prediction_system.services.session_coordinator import SessionCoordinator


class FailingAdapter(BroadcastAdapter):
    async def publish(self, topic, message):
        raise ConnectionError("broker unavailable")

    async def subscribe(self, topic):
        return
        yield

    async def close(self):
        pass


class TestTransitionTable:

    def test_valid_transitions(self):
        assert can_transition(SessionStatus.OPEN, SessionStatus.CLOSED)
        assert can_transition(SessionStatus.OPEN, SessionStatus.CANCELLED)
        assert can_transition(SessionStatus.CLOSED, SessionStatus.RESOLVED)

    def test_invalid_transitions(self):
        assert not can_transition(SessionStatus.OPEN, SessionStatus.RESOLVED)
        assert not can_transition(SessionStatus.CLOSED, SessionStatus.OPEN)
        assert not can_transition(SessionStatus.CLOSED, SessionStatus.CANCELLED)

    def test_terminal_states(self):
        assert TRANSITIONS[SessionStatus.RESOLVED] == []
        assert TRANSITIONS[SessionStatus.CANCELLED] == []


class TestPredictionRound:

    async def test_full_round(self, db, owner, recorder):
        coordinator = SessionCoordinator(db)

        opened = await coordinator.open("test", owner)
        assert opened.ok
        assert opened.status == SessionStatus.OPEN
        assert opened.cancelled_session is None
        session_id = opened.session.id

        added = await coordinator.submit("test", "alice", "13-9")
        assert added.ok
        assert added.entry.prediction == "13-9"

        bad = await coordinator.submit("test", "bob", "14-13")
        assert bad.error == PredictionErrorKind.INVALID_FORMAT
        assert bad.details["max_score"] == 13

        listed = await coordinator.list_entries("test")
        assert [(e.username, e.prediction) for e in listed.entries] == [("alice", "13-9")]

        closed = await coordinator.close("test", owner)
        assert closed.ok
        assert (await coordinator.status("test")).status == SessionStatus.CLOSED

        late = await coordinator.submit("test", "carol", "13-2")
        assert late.error == PredictionErrorKind.INVALID_TRANSITION
        assert late.message == "Predictions have been closed"

        resolved = await coordinator.resolve("test", "13-9", owner)
        assert resolved.ok
        assert [entry.username for entry in resolved.winners] == ["alice"]
        assert resolved.session.id == session_id
        assert resolved.session.actual_result == "13-9"
        assert resolved.session.winners_count == 1

        assert recorder.types == [
            "prediction-opened",
            "prediction-added",
            "prediction-closed",
            "prediction-resolved",
        ]

    async def test_no_winners(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")
        await coordinator.close("test", owner)

        resolved = await coordinator.resolve("test", "13-11", owner)

        assert resolved.ok
        assert resolved.winners == []
        assert resolved.session.winners_count == 0

    async def test_submission_order_is_kept(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        for name, value in [("carol", "13-1"), ("alice", "13-2"), ("bob", "2-13")]:
            assert (await coordinator.submit("test", name, value)).ok

        listed = await coordinator.list_entries("test")

        assert [entry.username for entry in listed.entries] == ["carol", "alice", "bob"]
        assert listed.session.total_entries == 3
        assert listed.session.unique_users == 3

    async def test_usernames_are_normalized(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "@Alice", "13-9")

        duplicate = await coordinator.submit("test", "alice", "13-5")

        assert duplicate.error == PredictionErrorKind.DUPLICATE_ENTRY


class TestNoActiveSession:

    async def test_operations_without_any_session(self, db, owner):
        coordinator = SessionCoordinator(db)

        assert (await coordinator.submit("test", "alice", "13-9")).error == PredictionErrorKind.NO_ACTIVE_SESSION
        assert (await coordinator.close("test", owner)).error == PredictionErrorKind.NO_ACTIVE_SESSION
        assert (await coordinator.resolve("test", "13-9", owner)).error == PredictionErrorKind.NO_ACTIVE_SESSION
        assert (await coordinator.list_entries("test")).error == PredictionErrorKind.NO_ACTIVE_SESSION
        edit = await coordinator.edit("test", "alice", "13-1", owner)
        assert edit.error == PredictionErrorKind.NO_ACTIVE_SESSION

    async def test_status_is_empty_not_an_error(self, db):
        result = await SessionCoordinator(db).status("test")
        assert result.ok
        assert result.status is None
        assert result.session is None

    async def test_open_empty_session_lists_nothing(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)

        listed = await coordinator.list_entries("test")

        assert listed.ok
        assert listed.entries == []


class TestDuplicates:

    async def test_duplicate_reports_existing_value(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        duplicate = await coordinator.submit("test", "alice", "13-5")

        assert not duplicate.ok
        assert duplicate.error == PredictionErrorKind.DUPLICATE_ENTRY
        assert duplicate.existing_value == "13-9"
        listed = await coordinator.list_entries("test")
        assert [entry.prediction for entry in listed.entries] == ["13-9"]

    async def test_format_checked_before_duplicate(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        result = await coordinator.submit("test", "alice", "not-a-score")

        assert result.error == PredictionErrorKind.INVALID_FORMAT

    async def test_new_session_accepts_the_same_participant_again(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")
        await coordinator.open("test", owner)

        again = await coordinator.submit("test", "alice", "13-5")

        assert again.ok


class TestEditing:

    async def test_participant_edits_own_entry(self, db, owner, alice, recorder):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        edited = await coordinator.edit("test", "alice", "13-5", alice)

        assert edited.ok
        assert edited.entry.prediction == "13-5"
        assert edited.entry.edited_at is not None
        event = recorder.published[-1][1]
        assert event["type"] == "prediction-edited"
        assert event["payload"]["previous_prediction"] == "13-9"
        assert event["payload"]["prediction"] == "13-5"

    async def test_other_participant_cannot_edit(self, db, owner, bob):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        result = await coordinator.edit("test", "alice", "13-0", bob)

        assert result.error == PredictionErrorKind.PERMISSION_DENIED
        listed = await coordinator.list_entries("test")
        assert listed.entries[0].prediction == "13-9"

    async def test_moderator_edits_any_entry(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.add_moderator("test", "helper", owner)
        helper = await get_or_create_user(db, "helper")
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        result = await coordinator.edit("test", "alice", "13-7", helper)

        assert result.ok
        assert result.entry.prediction == "13-7"

    async def test_edit_missing_entry(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)

        result = await coordinator.edit("test", "alice", "13-5", owner)

        assert result.error == PredictionErrorKind.ENTRY_NOT_FOUND

    async def test_edit_rejects_invalid_format(self, db, owner, alice):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        result = await coordinator.edit("test", "alice", "14-14", alice)

        assert result.error == PredictionErrorKind.INVALID_FORMAT

    async def test_edit_after_close_is_rejected_by_default(self, db, owner, alice):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")
        await coordinator.close("test", owner)

        result = await coordinator.edit("test", "alice", "13-5", alice)

        assert result.error == PredictionErrorKind.INVALID_TRANSITION

    async def test_edit_after_close_when_channel_allows_it(self, db, owner, alice):
        coordinator = SessionCoordinator(db)
        await coordinator.update_settings("test", owner, allow_edit_after_close=True)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")
        await coordinator.close("test", owner)

        edited = await coordinator.edit("test", "alice", "13-5", alice)

        assert edited.ok
        assert edited.status == SessionStatus.CLOSED

    async def test_no_edit_after_resolution(self, db, owner, alice):
        coordinator = SessionCoordinator(db)
        await coordinator.update_settings("test", owner, allow_edit_after_close=True)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")
        await coordinator.close("test", owner)
        await coordinator.resolve("test", "13-9", owner)

        result = await coordinator.edit("test", "alice", "13-5", alice)

        assert result.error == PredictionErrorKind.INVALID_TRANSITION


class TestSubmittingForOthers:

    async def test_moderator_submits_for_participant(self, db, owner, recorder):
        coordinator = SessionCoordinator(db)
        await coordinator.add_moderator("test", "helper", owner)
        helper = await get_or_create_user(db, "helper")
        await coordinator.open("test", owner)

        result = await coordinator.submit("test", "@Alice", "13-9", actor=helper)

        assert result.ok
        assert result.entry.username == "alice"
        event = recorder.published[-1][1]
        assert event["type"] == "prediction-added"
        assert event["payload"]["username"] == "alice"
        assert event["payload"]["submitted_by"] == "helper"

    async def test_participant_cannot_submit_for_someone_else(self, db, owner, bob, recorder):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        published = len(recorder.published)

        result = await coordinator.submit("test", "alice", "13-9", actor=bob)

        assert result.error == PredictionErrorKind.PERMISSION_DENIED
        assert result.details["level"] == "none"
        assert (await coordinator.list_entries("test")).entries == []
        assert len(recorder.published) == published

    async def test_self_submission_with_actor(self, db, owner, alice, recorder):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)

        result = await coordinator.submit("test", "alice", "13-9", actor=alice)

        assert result.ok
        assert recorder.published[-1][1]["payload"]["submitted_by"] == "alice"

    async def test_submission_without_actor_names_participant(self, db, owner, recorder):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)

        await coordinator.submit("test", "alice", "13-9")

        assert recorder.published[-1][1]["payload"]["submitted_by"] == "alice"


class TestClosing:

    async def test_close_twice(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.close("test", owner)

        again = await coordinator.close("test", owner)

        assert again.error == PredictionErrorKind.INVALID_TRANSITION
        assert again.details["current_status"] == "closed"


class TestResolution:

    async def test_resolve_open_session_is_rejected(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)

        result = await coordinator.resolve("test", "13-9", owner)

        assert result.error == PredictionErrorKind.INVALID_TRANSITION
        assert result.details["current_status"] == "open"

    async def test_resolution_is_one_shot(self, db, owner, session_factory):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")
        await coordinator.submit("test", "bob", "13-5")
        await coordinator.close("test", owner)
        first = await coordinator.resolve("test", "13-9", owner)
        session_id = first.session.id

        second = await coordinator.resolve("test", "13-5", owner)

        assert second.error == PredictionErrorKind.ALREADY_RESOLVED
        assert second.details["actual_result"] == "13-9"

        async with session_factory() as fresh:
            session = (await fresh.execute(
                select(PredictionSession).where(PredictionSession.id == session_id)
            )).scalar_one()
            assert session.actual_result == "13-9"
            assert {e.username: e.is_winner for e in session.entries} == {"alice": True, "bob": False}

    async def test_exact_string_match(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-09")
        await coordinator.close("test", owner)

        resolved = await coordinator.resolve("test", "13-9", owner)

        assert resolved.winners == []


class TestSupersession:

    async def test_open_cancels_open_predecessor(self, db, owner, recorder):
        coordinator = SessionCoordinator(db)
        first = await coordinator.open("test", owner)
        first_id = first.session.id
        await coordinator.submit("test", "alice", "13-9")
        recorder.published.clear()

        second = await coordinator.open("test", owner)

        assert second.ok
        assert second.cancelled_session.id == first_id
        assert second.cancelled_session.status == SessionStatus.CANCELLED.value
        assert recorder.types == ["prediction-cancelled", "prediction-opened"]
        assert recorder.published[0][1]["session_id"] == first_id

        listed = await coordinator.list_entries("test")
        assert listed.entries == []

    async def test_closed_predecessor_is_not_cancelled(self, db, owner):
        coordinator = SessionCoordinator(db)
        first = await coordinator.open("test", owner)
        first_id = first.session.id
        await coordinator.close("test", owner)

        second = await coordinator.open("test", owner)

        assert second.cancelled_session is None
        old = await coordinator.get_session(first_id)
        assert old.session.status == SessionStatus.CLOSED.value

    async def test_history_keeps_superseded_sessions(self, db, owner):
        coordinator = SessionCoordinator(db)
        first = await coordinator.open("test", owner)
        first_id = first.session.id
        await coordinator.submit("test", "alice", "13-9")
        second = await coordinator.open("test", owner)
        second_id = second.session.id

        history = await coordinator.history("test")

        assert [s.id for s in history.sessions] == [second_id, first_id]
        assert history.sessions[1].status == SessionStatus.CANCELLED.value

        old = await coordinator.get_session(first_id)
        assert [e.prediction for e in old.session.entries] == ["13-9"]

    async def test_history_limit(self, db, owner):
        coordinator = SessionCoordinator(db)
        for _ in range(3):
            await coordinator.open("test", owner)

        history = await coordinator.history("test", limit=2)

        assert len(history.sessions) == 2

    async def test_unknown_session(self, db):
        result = await SessionCoordinator(db).get_session(12345)
        assert result.error == PredictionErrorKind.NO_ACTIVE_SESSION


class TestPermissionDenial:

    async def test_denied_requests_mutate_and_emit_nothing(self, db, owner, alice, recorder, session_factory):
        coordinator = SessionCoordinator(db)

        for result in [
            await coordinator.open("test", alice),
            await coordinator.open("test", None),
        ]:
            assert result.error == PredictionErrorKind.PERMISSION_DENIED

        assert recorder.published == []
        async with session_factory() as fresh:
            sessions = (await fresh.execute(select(PredictionSession))).scalars().all()
        assert sessions == []

    async def test_participant_cannot_close_or_resolve(self, db, owner, alice, recorder):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)
        published = len(recorder.published)

        assert (await coordinator.close("test", alice)).error == PredictionErrorKind.PERMISSION_DENIED
        assert (await coordinator.resolve("test", "13-9", alice)).error == PredictionErrorKind.PERMISSION_DENIED
        assert (await coordinator.status("test")).status == SessionStatus.OPEN
        assert len(recorder.published) == published

    async def test_admin_runs_the_lifecycle(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.add_admin("test", "mod1", owner)
        admin = await get_or_create_user(db, "mod1")

        assert (await coordinator.open("test", admin)).ok
        assert (await coordinator.close("test", admin)).ok
        assert (await coordinator.resolve("test", "13-9", admin)).ok

    async def test_invalid_channel_name(self, db, owner):
        result = await SessionCoordinator(db).open("ab", owner)
        assert result.error == PredictionErrorKind.INVALID_CHANNEL_NAME

    async def test_invalid_username(self, db, owner):
        coordinator = SessionCoordinator(db)
        await coordinator.open("test", owner)

        result = await coordinator.submit("test", "   ", "13-9")

        assert result.error == PredictionErrorKind.INVALID_USERNAME


class TestNotificationFailure:

    async def test_transition_survives_a_failing_broadcaster(self, db, owner, session_factory):
        coordinator = SessionCoordinator(db, notifier=EventNotifier(FailingAdapter()))

        result = await coordinator.open("test", owner)

        assert result.ok
        async with session_factory() as fresh:
            count = len((await fresh.execute(select(PredictionSession))).scalars().all())
        assert count == 1

    async def test_entries_persist_with_their_session(self, db, owner, session_factory):
        coordinator = SessionCoordinator(db)
        opened = await coordinator.open("test", owner)
        await coordinator.submit("test", "alice", "13-9")

        async with session_factory() as fresh:
            entries = (await fresh.execute(select(PredictionEntry))).scalars().all()
        assert [(e.session_id, e.username) for e in entries] == [(opened.session.id, "alice")]
