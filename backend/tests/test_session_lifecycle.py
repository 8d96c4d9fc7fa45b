"""
Tests for the session lifecycle: creation, activation, submission and the sweep
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select, update

from proctorhub.core.cache import cache
from proctorhub.core.config import settings
from proctorhub.core.database import AsyncSessionLocal
from proctorhub.models import EventType, ProctoringSession, SessionEvent, SessionStatus, User
from proctorhub.services.session_service import (
    AssessmentNotFoundError,
    AttemptRemovedError,
    SessionClosedError,
    SessionService,
    StaleSessionVersionError,
)
from proctorhub.utils.timezone import get_utc_now


async def count_rows(db, model, *criteria) -> int:
    result = await db.execute(select(func.count()).select_from(model).filter(*criteria))
    return result.scalar_one()


class TestCreateSession:

    @pytest.mark.asyncio
    async def test_new_session_starts_waiting(self, seed):
        async with AsyncSessionLocal() as db:
            session = await SessionService(db).create_session(seed.exam_id, seed.student_id)

            assert session.status == SessionStatus.WAITING
            assert session.requires_proctoring is True
            assert session.proctoring_active is False
            assert session.completed is False
            assert session.ended_at is None
            assert session.version == 0
            assert [q.id for q in session.assessment.questions] == ["q1", "q2"]

    @pytest.mark.asyncio
    async def test_unproctored_assessment(self, seed):
        async with AsyncSessionLocal() as db:
            session = await SessionService(db).create_session(seed.quiz_id, seed.student_id)
            assert session.requires_proctoring is False

    @pytest.mark.asyncio
    async def test_unknown_assessment(self, seed):
        async with AsyncSessionLocal() as db:
            with pytest.raises(AssessmentNotFoundError):
                await SessionService(db).create_session("missing", seed.student_id)

    @pytest.mark.asyncio
    async def test_second_attempt_retires_the_first(self, seed):
        """Creating twice for the same pair leaves exactly one, newer session"""
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            first = await service.create_session(seed.exam_id, seed.student_id)
            await service.log_event(first.id, EventType.TAB_SWITCH)
            second = await service.create_session(seed.exam_id, seed.student_id)

            assert second.id != first.id
            assert await service.get_session(first.id) is None
            assert await count_rows(db, ProctoringSession, ProctoringSession.user_id == seed.student_id) == 1
            assert await count_rows(db, SessionEvent, SessionEvent.session_id == first.id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_creates_leave_one_open_attempt(self, seed):
        """Two tabs starting the same attempt at once still end up with a single open session"""
        async def create():
            async with AsyncSessionLocal() as db:
                return await SessionService(db).create_session(seed.exam_id, seed.student_id)

        first, second = await asyncio.gather(create(), create())

        assert first.id != second.id
        assert first.status == second.status == SessionStatus.WAITING
        async with AsyncSessionLocal() as db:
            open_sessions = await count_rows(
                db,
                ProctoringSession,
                ProctoringSession.assessment_id == seed.exam_id,
                ProctoringSession.user_id == seed.student_id,
                ProctoringSession.status.in_(SessionStatus.OPEN),
            )
        assert open_sessions == 1

    @pytest.mark.asyncio
    async def test_other_students_sessions_are_untouched(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            mine = await service.create_session(seed.exam_id, seed.student_id)
            await service.create_session(seed.exam_id, seed.other_student_id)

            assert await service.get_session(mine.id) is not None


class TestSetActive:

    @pytest.mark.asyncio
    async def test_activate_and_deactivate(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)

            session, deleted = await service.set_active(session.id, True)
            assert deleted is False
            assert session.proctoring_active is True
            assert session.status == SessionStatus.ACTIVE
            assert session.ended_at is None
            assert session.version == 1

            session, deleted = await service.set_active(session.id, False)
            assert deleted is False
            assert session.proctoring_active is False
            assert session.status == SessionStatus.ENDED_INCOMPLETE
            assert session.ended_at is not None
            assert session.version == 2

    @pytest.mark.asyncio
    async def test_reactivation_clears_ended_at(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(session.id, False)

            session, _ = await service.set_active(session.id, True)
            assert session.ended_at is None
            assert session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(session.id, True, expected_version=0)
            await service.set_active(session.id, False, expected_version=1)

            with pytest.raises(StaleSessionVersionError) as excinfo:
                await service.set_active(session.id, True, expected_version=0)
            assert excinfo.value.actual == 2

            current = await service.get_session(session.id)
            assert current.proctoring_active is False

    @pytest.mark.asyncio
    async def test_deactivating_a_completed_session_deletes_it(self, seed):
        """The delete happens in the same call, not at the next sweep"""
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(session.id, True)
            await service.log_event(session.id, EventType.FACE_LOST)
            await service.submit_answers(session.id, seed.all_correct)

            snapshot, deleted = await service.set_active(session.id, False)

            assert deleted is True
            assert snapshot.id == session.id
            assert await service.get_session(session.id) is None
            assert await count_rows(db, SessionEvent, SessionEvent.session_id == session.id) == 0

    @pytest.mark.asyncio
    async def test_completed_session_cannot_be_reactivated(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.submit_answers(session.id, seed.all_correct)

            with pytest.raises(SessionClosedError):
                await service.set_active(session.id, True)

    @pytest.mark.asyncio
    async def test_ended_attempt_cannot_reopen_beside_a_newer_one(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            ended = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(ended.id, False)
            await service.create_session(seed.exam_id, seed.student_id)

            with pytest.raises(SessionClosedError):
                await service.set_active(ended.id, True)

            current = await service.get_session(ended.id)
            assert current.status == SessionStatus.ENDED_INCOMPLETE
            assert current.proctoring_active is False

    @pytest.mark.asyncio
    async def test_state_changes_are_published(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)

            with patch.object(cache, "apublish", new=AsyncMock(return_value=1)) as publish:
                await service.set_active(session.id, True)

            publish.assert_awaited_once()
            channel, message = publish.await_args.args
            assert channel == f"proctoring:session:{session.id}"
            assert message["kind"] == "session"
            assert message["proctoring_active"] is True
            assert message["version"] == 1


class TestSubmitAnswers:

    @pytest.mark.asyncio
    async def test_all_correct_scores_100(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(session.id, True)

            result = await service.submit_answers(session.id, seed.all_correct)

            assert result["score"] == 100
            assert result["correct_answers"] == 2
            assert result["total_questions"] == 2

            stored = await service.get_session(session.id)
            assert stored.completed is True
            assert stored.proctoring_active is False
            assert stored.ended_at is not None
            assert stored.status == SessionStatus.COMPLETED
            assert stored.answers == seed.all_correct

    @pytest.mark.asyncio
    async def test_partial_score(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            result = await service.submit_answers(session.id, {"q1": 1, "q2": 0})
            assert result["score"] == 50

    @pytest.mark.asyncio
    async def test_double_submission_is_rejected(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.submit_answers(session.id, seed.all_correct)

            with pytest.raises(SessionClosedError):
                await service.submit_answers(session.id, {"q1": 0, "q2": 0})
            assert (await service.get_session(session.id)).score == 100

    @pytest.mark.asyncio
    async def test_removed_attempt_cannot_submit(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            for _ in range(3):
                await service.log_event(session.id, EventType.TAB_SWITCH)
            await service.log_event(session.id, EventType.KICKED_OUT, {"violations": 3})

            with pytest.raises(AttemptRemovedError):
                await service.submit_answers(session.id, seed.all_correct)

            stored = await service.get_session(session.id)
            assert stored.completed is False
            assert stored.score is None


class TestSweep:

    @pytest.mark.asyncio
    async def test_scenario_submitted_session_disappears_from_listing(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            student = await db.get(User, seed.student_id)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(session.id, True)
            result = await service.submit_answers(session.id, seed.all_correct)
            assert result["score"] == 100

            listed = await service.list_sessions(student)

            assert session.id not in [s.id for s in listed]
            assert await service.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_single_fetch_does_not_sweep(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.submit_answers(session.id, seed.all_correct)

            fetched = await service.get_session(session.id)
            assert fetched is not None
            assert fetched.completed is True

    @pytest.mark.asyncio
    async def test_stale_sessions_are_swept(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            stale = await service.create_session(seed.exam_id, seed.student_id)
            fresh = await service.create_session(seed.exam_id, seed.other_student_id)
            await service.log_event(stale.id, EventType.FACE_LOST)
            await db.execute(
                update(ProctoringSession)
                .where(ProctoringSession.id == stale.id)
                .values(started_at=get_utc_now() - timedelta(seconds=settings.session_stale_after_seconds + 60))
            )
            await db.commit()

            assert await service.sweep() == 1
            assert await service.get_session(stale.id) is None
            assert await service.get_session(fresh.id) is not None
            assert await count_rows(db, SessionEvent, SessionEvent.session_id == stale.id) == 0

    @pytest.mark.asyncio
    async def test_ended_sessions_are_swept(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.set_active(session.id, True)
            await service.set_active(session.id, False)

            assert await service.sweep() == 1
            assert await service.sweep() == 0

    @pytest.mark.asyncio
    async def test_listing_can_skip_the_sweep(self, seed, monkeypatch):
        monkeypatch.setattr(settings, "sweep_on_list_reads", False)
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            student = await db.get(User, seed.student_id)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.submit_answers(session.id, seed.all_correct)

            await service.list_sessions(student)
            assert await service.get_session(session.id) is not None

    @pytest.mark.asyncio
    async def test_retained_sessions_get_a_terminal_status(self, seed, monkeypatch):
        monkeypatch.setattr(settings, "retain_closed_sessions", True)
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            student = await db.get(User, seed.student_id)
            done = await service.create_session(seed.exam_id, seed.student_id)
            await service.submit_answers(done.id, seed.all_correct)
            quit_early = await service.create_session(seed.quiz_id, seed.student_id)
            await service.set_active(quit_early.id, False)

            assert await service.list_sessions(student) == []
            closed = {s.id: s.status for s in await service.list_sessions(student, state="closed")}

            assert closed == {
                done.id: SessionStatus.COMPLETED,
                quit_early.id: SessionStatus.ENDED_INCOMPLETE,
            }
            assert await service.sweep() == 0

    @pytest.mark.asyncio
    async def test_retained_retry_expires_the_previous_attempt(self, seed, monkeypatch):
        monkeypatch.setattr(settings, "retain_closed_sessions", True)
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            first = await service.create_session(seed.exam_id, seed.student_id)
            second = await service.create_session(seed.exam_id, seed.student_id)

            assert (await service.get_session(first.id)).status == SessionStatus.EXPIRED
            assert (await service.get_session(second.id)).status == SessionStatus.WAITING


class TestListScopes:

    @pytest.mark.asyncio
    async def test_visibility_by_role(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            mine = await service.create_session(seed.exam_id, seed.student_id)
            theirs = await service.create_session(seed.exam_id, seed.other_student_id)

            student = await db.get(User, seed.student_id)
            instructor = await db.get(User, seed.instructor_id)
            other_instructor = await db.get(User, seed.other_instructor_id)
            admin = await db.get(User, seed.admin_id)

            assert [s.id for s in await service.list_sessions(student)] == [mine.id]
            assert {s.id for s in await service.list_sessions(instructor)} == {mine.id, theirs.id}
            assert await service.list_sessions(other_instructor) == []
            assert {s.id for s in await service.list_sessions(admin)} == {mine.id, theirs.id}

    @pytest.mark.asyncio
    async def test_state_filters(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            waiting = await service.create_session(seed.exam_id, seed.student_id)
            active = await service.create_session(seed.exam_id, seed.other_student_id)
            await service.set_active(active.id, True)
            instructor = await db.get(User, seed.instructor_id)

            assert [s.id for s in await service.list_sessions(instructor, state="waiting")] == [waiting.id]
            assert [s.id for s in await service.list_sessions(instructor, state="active")] == [active.id]
            assert await service.list_sessions(instructor, assessment_id=seed.quiz_id) == []


class TestViolationSummary:

    @pytest.mark.asyncio
    async def test_counts_only_violations(self, seed):
        async with AsyncSessionLocal() as db:
            service = SessionService(db)
            session = await service.create_session(seed.exam_id, seed.student_id)
            await service.log_event(session.id, EventType.VIDEO_STREAM_STARTED)
            await service.log_event(session.id, EventType.FACE_LOST)
            await service.log_event(session.id, EventType.TAB_SWITCH)
            await service.log_event(session.id, EventType.TAB_SWITCH)

            summary = await service.violation_summary(session.id)

            assert summary["total_violations"] == 3
            assert summary["by_type"] == {EventType.FACE_LOST: 1, EventType.TAB_SWITCH: 2}
            assert summary["needs_attention"] is True
