from .user import UserSummary
from .assessment import AssessmentCreate, AssessmentSummary, AssessmentView, QuestionCreate, QuestionView
from .proctoring import (
    SessionCreate,
    SessionView,
    SessionEventView,
    SetActiveRequest,
    EventCreate,
    ViolationSummary,
    SignalPublish,
    SignalResponse,
    SubmitAnswersRequest,
    SubmissionResult,
)

__all__ = [
    "UserSummary",
    "AssessmentCreate",
    "AssessmentSummary",
    "AssessmentView",
    "QuestionCreate",
    "QuestionView",
    "SessionCreate",
    "SessionView",
    "SessionEventView",
    "SetActiveRequest",
    "EventCreate",
    "ViolationSummary",
    "SignalPublish",
    "SignalResponse",
    "SubmitAnswersRequest",
    "SubmissionResult",
]
