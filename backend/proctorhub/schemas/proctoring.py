from pydantic import BaseModel, Field, field_serializer
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from .assessment import AssessmentSummary, QuestionView
from .user import UserSummary
from ..utils.timezone import format_display_time


SignalRole = Literal["offer", "answer", "student-ice", "instructor-ice"]

LoggableEventType = Literal[
    "face-lost",
    "tab-switch",
    "kicked-out",
    "webcam-access-failed",
    "video-stream-started",
]


class SessionCreate(BaseModel):
    assessment_id: str


class SetActiveRequest(BaseModel):
    proctoring_active: bool
    # when given, the write is rejected unless it matches the stored version
    expected_version: Optional[int] = None


class EventCreate(BaseModel):
    type: LoggableEventType
    metadata: Optional[Dict[str, Any]] = None


class SessionEventView(BaseModel):
    id: int
    type: str
    timestamp: datetime
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="event_metadata")
    timestamp_display: Optional[str] = None

    @field_serializer("timestamp_display")
    def serialize_timestamp_display(self, value):
        return format_display_time(self.timestamp) if self.timestamp else None

    class Config:
        from_attributes = True
        populate_by_name = True


class AssessmentWithQuestions(AssessmentSummary):
    questions: List[QuestionView] = []


class SessionView(BaseModel):
    id: str
    user_id: int
    assessment_id: str
    requires_proctoring: bool
    proctoring_active: bool
    started_at: datetime
    ended_at: Optional[datetime] = None
    completed: bool
    answers: Optional[Dict[str, int]] = None
    score: Optional[float] = None
    status: str
    version: int
    user: Optional[UserSummary] = None
    assessment: Optional[AssessmentWithQuestions] = None
    events: List[SessionEventView] = []
    # set when the call that produced this view also deleted the session
    deleted: bool = False


class ViolationSummary(BaseModel):
    session_id: str
    total_violations: int
    by_type: Dict[str, int]
    needs_attention: bool


class SignalPublish(BaseModel):
    session_id: str
    type: SignalRole
    signal: Any


class SignalResponse(BaseModel):
    success: bool = True
    session_id: str
    type: SignalRole
    signal: Any = None
    user_id: int
    is_instructor: bool
    is_student: bool


class SubmitAnswersRequest(BaseModel):
    session_id: str
    answers: Dict[str, int]


class SubmissionResult(BaseModel):
    session_id: str
    score: float
    correct_answers: int
    total_questions: int
