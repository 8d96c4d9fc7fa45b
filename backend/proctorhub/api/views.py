"""
Response builders shared by the v1 endpoints.

Answer keys are only exposed to the owning instructor (or an admin) and
signaling events never appear in a session's event log.
"""
from fastapi import HTTPException, status

from ..models.assessment import Assessment
from ..models.proctoring_session import ProctoringSession
from ..models.user import User
from ..schemas.assessment import AssessmentView, QuestionView
from ..schemas.proctoring import AssessmentWithQuestions, SessionEventView, SessionView
from ..schemas.user import UserSummary


def owns_assessment(user: User, assessment: Assessment) -> bool:
    return user.is_admin or (assessment is not None and assessment.instructor_id == user.id)


def is_session_student(user: User, session: ProctoringSession) -> bool:
    return session.user_id == user.id


def ensure_can_view(user: User, session: ProctoringSession):
    if not (is_session_student(user, session) or owns_assessment(user, session.assessment)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")


def ensure_can_manage(user: User, session: ProctoringSession):
    if not owns_assessment(user, session.assessment):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the assessment's instructor can manage this session",
        )


def _questions(assessment: Assessment, with_key: bool):
    return [
        QuestionView(
            id=question.id,
            prompt=question.prompt,
            options=question.options,
            points=question.points,
            correct_option=question.correct_option if with_key else None,
        )
        for question in assessment.questions
    ]


def assessment_view(assessment: Assessment, viewer: User) -> AssessmentView:
    return AssessmentView(
        id=assessment.id,
        kind=assessment.kind,
        title=assessment.title,
        instructor_id=assessment.instructor_id,
        requires_proctoring=assessment.requires_proctoring,
        created_at=assessment.created_at,
        questions=_questions(assessment, owns_assessment(viewer, assessment)),
    )


def session_view(session: ProctoringSession, viewer: User, deleted: bool = False) -> SessionView:
    assessment = session.assessment
    return SessionView(
        id=session.id,
        user_id=session.user_id,
        assessment_id=session.assessment_id,
        requires_proctoring=bool(session.requires_proctoring),
        proctoring_active=bool(session.proctoring_active),
        started_at=session.started_at,
        ended_at=session.ended_at,
        completed=bool(session.completed),
        answers=session.answers,
        score=session.score,
        status=session.status,
        version=session.version,
        user=UserSummary.model_validate(session.user) if session.user else None,
        assessment=AssessmentWithQuestions(
            id=assessment.id,
            kind=assessment.kind,
            title=assessment.title,
            questions=_questions(assessment, owns_assessment(viewer, assessment)),
        ) if assessment else None,
        events=[SessionEventView.model_validate(event) for event in session.events if not event.is_signal],
        deleted=deleted,
    )
