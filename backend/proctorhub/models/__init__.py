from .base import BaseModel
from .user import User, UserRole
from .assessment import Assessment, Question
from .proctoring_session import ProctoringSession, SessionEvent, SessionStatus, EventType

__all__ = [
    "BaseModel",
    "User",
    "UserRole",
    "Assessment",
    "Question",
    "ProctoringSession",
    "SessionEvent",
    "SessionStatus",
    "EventType",
]
