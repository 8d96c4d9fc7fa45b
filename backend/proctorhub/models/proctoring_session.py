from sqlalchemy import Column, String, DateTime, ForeignKey, Float, Boolean, Integer, JSON, Index, text
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import get_utc_now


class SessionStatus:
    WAITING = "waiting"
    ACTIVE = "active"
    ENDED_INCOMPLETE = "ended_incomplete"
    COMPLETED = "completed"
    EXPIRED = "expired"

    OPEN = (WAITING, ACTIVE)
    TERMINAL = (ENDED_INCOMPLETE, COMPLETED, EXPIRED)


OPEN_STATUS_CLAUSE = "status IN ({})".format(", ".join(f"'{status}'" for status in SessionStatus.OPEN))


class EventType:
    FACE_LOST = "face-lost"
    TAB_SWITCH = "tab-switch"
    KICKED_OUT = "kicked-out"
    WEBCAM_ACCESS_FAILED = "webcam-access-failed"
    VIDEO_STREAM_STARTED = "video-stream-started"

    VIOLATIONS = (FACE_LOST, TAB_SWITCH)
    LOGGABLE = (FACE_LOST, TAB_SWITCH, KICKED_OUT, WEBCAM_ACCESS_FAILED, VIDEO_STREAM_STARTED)

    # signaling events are stored as "rtc-<role>"
    SIGNAL_PREFIX = "rtc-"


class ProctoringSession(Base):
    """One student's attempt at an assessment"""
    __tablename__ = "proctoring_sessions"
    __table_args__ = (
        # at most one open attempt per student and assessment
        Index(
            "uq_proctoring_sessions_open_attempt",
            "assessment_id",
            "user_id",
            unique=True,
            postgresql_where=text(OPEN_STATUS_CLAUSE),
            sqlite_where=text(OPEN_STATUS_CLAUSE),
        ),
    )

    id = Column(String, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    assessment_id = Column(String, ForeignKey("assessments.id"), nullable=False, index=True)
    requires_proctoring = Column(Boolean, default=True)
    proctoring_active = Column(Boolean, default=False)
    started_at = Column(DateTime, default=get_utc_now)
    ended_at = Column(DateTime, nullable=True)
    completed = Column(Boolean, default=False)
    answers = Column(JSON, nullable=True)
    score = Column(Float, nullable=True)
    status = Column(String, default=SessionStatus.WAITING, index=True)
    version = Column(Integer, default=0, nullable=False)

    user = relationship("User", back_populates="proctoring_sessions")
    assessment = relationship("Assessment", back_populates="sessions")
    events = relationship(
        "SessionEvent",
        back_populates="session",
        order_by="[SessionEvent.timestamp.desc(), SessionEvent.id.desc()]",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<ProctoringSession {self.id} status={self.status}>"


class SessionEvent(Base):
    __tablename__ = "session_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("proctoring_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, default=get_utc_now, index=True)
    event_metadata = Column("metadata", JSON, nullable=True)

    session = relationship("ProctoringSession", back_populates="events")

    @property
    def is_signal(self) -> bool:
        return self.type.startswith(EventType.SIGNAL_PREFIX)

    def __repr__(self):
        return f"<SessionEvent {self.type} for session {self.session_id}>"
