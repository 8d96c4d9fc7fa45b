from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Boolean, Integer, JSON
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import get_utc_now


class Assessment(Base):
    """An exam or a quiz; both are proctored the same way"""
    __tablename__ = "assessments"

    id = Column(String, primary_key=True, index=True)
    kind = Column(String, default="exam", nullable=False)
    title = Column(String, nullable=False)
    instructor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    requires_proctoring = Column(Boolean, default=True)
    created_at = Column(DateTime, default=get_utc_now)

    instructor = relationship("User", back_populates="assessments")
    questions = relationship(
        "Question",
        back_populates="assessment",
        order_by="Question.order_number",
        cascade="all, delete-orphan",
    )
    sessions = relationship("ProctoringSession", back_populates="assessment")


class Question(Base):
    __tablename__ = "questions"

    id = Column(String, primary_key=True, index=True)
    assessment_id = Column(String, ForeignKey("assessments.id"), nullable=False)
    prompt = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)
    correct_option = Column(Integer, nullable=False)
    points = Column(Integer, default=1)
    order_number = Column(Integer, default=0)

    assessment = relationship("Assessment", back_populates="questions")
