from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, update, or_, and_
from sqlalchemy.orm import selectinload
from sqlalchemy.exc import IntegrityError
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging
import uuid

from ..core.cache import cache, session_channel
from ..core.config import settings
from ..models.assessment import Assessment
from ..models.proctoring_session import ProctoringSession, SessionEvent, SessionStatus, EventType
from ..models.user import User
from ..utils.timezone import get_utc_now, utc_cutoff

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3


class SessionNotFoundError(Exception):
    pass


class AssessmentNotFoundError(Exception):
    pass


class StaleSessionVersionError(Exception):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Session version is {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


class SessionClosedError(Exception):
    pass


class ConcurrentCreateError(Exception):
    pass


class AttemptRemovedError(Exception):
    pass


def sweep_condition(now: Optional[datetime] = None):
    """Sessions no longer worth retaining: completed, ended, or stale"""
    return or_(
        ProctoringSession.completed.is_(True),
        ProctoringSession.ended_at.isnot(None),
        ProctoringSession.started_at < utc_cutoff(settings.session_stale_after_seconds, now),
    )


class SessionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _with_details(self, query):
        return query.options(
            selectinload(ProctoringSession.events),
            selectinload(ProctoringSession.user),
            selectinload(ProctoringSession.assessment).selectinload(Assessment.questions),
        ).execution_options(populate_existing=True)

    async def _notify(self, session_id: str, message: Dict[str, Any]):
        await cache.apublish(session_channel(session_id), {"session_id": session_id, **message})

    async def get_session(self, session_id: str) -> Optional[ProctoringSession]:
        # a direct fetch never sweeps, so the record being fetched survives the read
        result = await self.db.execute(
            self._with_details(select(ProctoringSession)).filter(ProctoringSession.id == session_id)
        )
        return result.scalars().first()

    async def get_session_brief(self, session_id: str) -> Optional[ProctoringSession]:
        """Session with its assessment only, enough for access checks"""
        result = await self.db.execute(
            select(ProctoringSession)
            .options(selectinload(ProctoringSession.assessment))
            .filter(ProctoringSession.id == session_id)
        )
        return result.scalars().first()

    async def require_session(self, session_id: str) -> ProctoringSession:
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def create_session(self, assessment_id: str, user_id: int) -> ProctoringSession:
        assessment = await self.db.get(Assessment, assessment_id)
        if assessment is None:
            raise AssessmentNotFoundError(assessment_id)

        requires_proctoring = assessment.requires_proctoring is not False
        for attempt in range(1, CREATE_ATTEMPTS + 1):
            await self._retire_open_attempts(assessment_id, user_id)
            db_session = ProctoringSession(
                id=str(uuid.uuid4()),
                user_id=user_id,
                assessment_id=assessment_id,
                requires_proctoring=requires_proctoring,
                proctoring_active=False,
                started_at=get_utc_now(),
                status=SessionStatus.WAITING,
                version=0,
            )
            self.db.add(db_session)
            try:
                await self.db.flush()
                session = await self.require_session(db_session.id)
                await self.db.commit()
            except IntegrityError:
                # a concurrent create opened an attempt between the lookup and the insert
                await self.db.rollback()
                logger.info(
                    f"Concurrent session create for assessment {assessment_id}, user {user_id} "
                    f"(attempt {attempt}/{CREATE_ATTEMPTS})"
                )
                continue
            return session

        raise ConcurrentCreateError(f"Could not open a session for assessment {assessment_id}")

    async def _retire_open_attempts(self, assessment_id: str, user_id: int):
        prior = await self.db.execute(
            select(ProctoringSession.id).filter(
                ProctoringSession.assessment_id == assessment_id,
                ProctoringSession.user_id == user_id,
                ProctoringSession.status.in_(SessionStatus.OPEN),
            )
        )
        prior_ids = list(prior.scalars().all())
        if prior_ids:
            logger.info(f"Retiring {len(prior_ids)} prior session(s) for assessment {assessment_id}, user {user_id}")
            await self._retire(prior_ids, SessionStatus.EXPIRED)

    async def list_sessions(
        self,
        viewer: User,
        assessment_id: Optional[str] = None,
        state: Optional[str] = None,
    ) -> List[ProctoringSession]:
        if settings.sweep_on_list_reads:
            await self.sweep()

        query = self._with_details(select(ProctoringSession))
        if viewer.is_admin:
            pass
        elif viewer.is_instructor:
            query = query.join(Assessment).filter(Assessment.instructor_id == viewer.id)
        else:
            query = query.filter(ProctoringSession.user_id == viewer.id)

        if assessment_id:
            query = query.filter(ProctoringSession.assessment_id == assessment_id)

        if state == "closed":
            query = query.filter(ProctoringSession.status.in_(SessionStatus.TERMINAL))
        else:
            query = query.filter(ProctoringSession.status.in_(SessionStatus.OPEN))
            if state == "waiting":
                query = query.filter(
                    ProctoringSession.requires_proctoring.is_(True),
                    ProctoringSession.proctoring_active.is_(False),
                )
            elif state == "active":
                query = query.filter(ProctoringSession.proctoring_active.is_(True))

        result = await self.db.execute(query.order_by(ProctoringSession.started_at.desc()))
        return list(result.scalars().all())

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Retire every session matching the sweep condition; returns how many were retired"""
        query = select(ProctoringSession.id).filter(sweep_condition(now))
        if settings.retain_closed_sessions:
            query = query.filter(ProctoringSession.status.in_(SessionStatus.OPEN))
        result = await self.db.execute(query)
        ids = list(result.scalars().all())
        if not ids:
            return 0

        if settings.retain_closed_sessions:
            await self._mark_closed(ids)
        else:
            await self._delete_sessions(ids)
        logger.info(f"Session sweep retired {len(ids)} session(s)")
        return len(ids)

    async def _mark_closed(self, ids: List[str]):
        rows = await self.db.execute(
            select(ProctoringSession.id, ProctoringSession.completed, ProctoringSession.ended_at)
            .filter(ProctoringSession.id.in_(ids))
        )
        for session_id, completed, ended_at in rows.all():
            if completed:
                status = SessionStatus.COMPLETED
            elif ended_at is not None:
                status = SessionStatus.ENDED_INCOMPLETE
            else:
                status = SessionStatus.EXPIRED
            await self.db.execute(
                update(ProctoringSession)
                .where(ProctoringSession.id == session_id)
                .values(status=status, proctoring_active=False, ended_at=ended_at or get_utc_now())
            )
        await self.db.commit()

    async def _retire(self, ids: List[str], status: str):
        if settings.retain_closed_sessions:
            await self.db.execute(
                update(ProctoringSession)
                .where(ProctoringSession.id.in_(ids))
                .values(status=status, proctoring_active=False, ended_at=get_utc_now())
            )
            await self.db.commit()
        else:
            await self._delete_sessions(ids)

    async def _delete_sessions(self, ids: List[str]):
        # events first, then the sessions they belong to
        await self.db.execute(delete(SessionEvent).where(SessionEvent.session_id.in_(ids)))
        await self.db.execute(delete(ProctoringSession).where(ProctoringSession.id.in_(ids)))
        await self.db.commit()
        for session_id in ids:
            await self._notify(session_id, {"kind": "session", "deleted": True})

    async def delete_session(self, session_id: str) -> bool:
        exists = await self.db.get(ProctoringSession, session_id)
        if exists is None:
            return False
        await self._delete_sessions([session_id])
        return True

    async def set_active(
        self,
        session_id: str,
        active: bool,
        expected_version: Optional[int] = None,
    ) -> tuple[ProctoringSession, bool]:
        """Toggle proctoring; returns the session and whether it was deleted by this call"""
        session = await self.require_session(session_id)
        if expected_version is not None and session.version != expected_version:
            raise StaleSessionVersionError(expected_version, session.version)

        if active:
            if session.completed:
                raise SessionClosedError("Completed sessions cannot be reactivated")
            session.proctoring_active = True
            session.ended_at = None
            session.status = SessionStatus.ACTIVE
        elif session.completed and not settings.retain_closed_sessions:
            # completed and ended: removed immediately
            await self._delete_sessions([session_id])
            session.proctoring_active = False
            session.ended_at = get_utc_now()
            return session, True
        else:
            session.proctoring_active = False
            session.ended_at = get_utc_now()
            session.status = SessionStatus.COMPLETED if session.completed else SessionStatus.ENDED_INCOMPLETE

        session.version += 1
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise SessionClosedError("A newer attempt is open for this student")
        await self._notify(session_id, {
            "kind": "session",
            "proctoring_active": session.proctoring_active,
            "status": session.status,
            "version": session.version,
        })
        return await self.require_session(session_id), False

    async def log_event(
        self,
        session_id: str,
        event_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionEvent:
        if await self.db.get(ProctoringSession, session_id) is None:
            raise SessionNotFoundError(session_id)

        event = SessionEvent(
            session_id=session_id,
            type=event_type,
            timestamp=get_utc_now(),
            event_metadata=metadata,
        )
        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(event)

        if event_type in EventType.VIOLATIONS or event_type == EventType.KICKED_OUT:
            logger.info(f"Session {session_id}: {event_type}")
        await self._notify(session_id, {
            "kind": "event",
            "type": event_type,
            "timestamp": event.timestamp.isoformat(),
        })
        return event

    async def has_event(self, session_id: str, event_type: str) -> bool:
        result = await self.db.execute(
            select(SessionEvent.id).filter(
                SessionEvent.session_id == session_id,
                SessionEvent.type == event_type,
            ).limit(1)
        )
        return result.scalars().first() is not None

    async def violation_summary(self, session_id: str) -> Dict[str, Any]:
        if await self.db.get(ProctoringSession, session_id) is None:
            raise SessionNotFoundError(session_id)

        result = await self.db.execute(
            select(SessionEvent.type).filter(
                SessionEvent.session_id == session_id,
                SessionEvent.type.in_(EventType.VIOLATIONS),
            )
        )
        by_type: Dict[str, int] = {}
        for event_type in result.scalars().all():
            by_type[event_type] = by_type.get(event_type, 0) + 1
        total = sum(by_type.values())
        return {
            "session_id": session_id,
            "total_violations": total,
            "by_type": by_type,
            "needs_attention": total >= settings.violation_limit,
        }

    async def submit_answers(self, session_id: str, answers: Dict[str, int]) -> Dict[str, Any]:
        session = await self.require_session(session_id)
        if session.completed:
            raise SessionClosedError("Answers were already submitted for this session")
        if await self.has_event(session_id, EventType.KICKED_OUT):
            raise AttemptRemovedError("The student was removed from this attempt")

        questions = session.assessment.questions if session.assessment else []
        by_id = {question.id: question for question in questions}
        correct_answers = 0
        for question_id, option in answers.items():
            question = by_id.get(question_id)
            if question is not None and question.correct_option == option:
                correct_answers += 1
        total_questions = len(questions)
        score = (correct_answers / total_questions) * 100 if total_questions else 0.0

        session.answers = answers
        session.score = score
        session.completed = True
        session.proctoring_active = False
        session.ended_at = get_utc_now()
        session.status = SessionStatus.COMPLETED
        session.version += 1
        await self.db.commit()

        await self._notify(session_id, {
            "kind": "session",
            "proctoring_active": False,
            "status": SessionStatus.COMPLETED,
            "version": session.version,
        })
        return {
            "session_id": session_id,
            "score": score,
            "correct_answers": correct_answers,
            "total_questions": total_questions,
        }

    async def list_submissions(self, user_id: int) -> List[ProctoringSession]:
        result = await self.db.execute(
            self._with_details(select(ProctoringSession))
            .filter(ProctoringSession.user_id == user_id, ProctoringSession.completed.is_(True))
            .order_by(ProctoringSession.ended_at.desc())
        )
        return list(result.scalars().all())
