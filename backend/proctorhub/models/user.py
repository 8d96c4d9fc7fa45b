from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship
from .base import BaseModel


class UserRole:
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class User(BaseModel):
    __tablename__ = "users"

    full_name = Column(String, index=True)
    email = Column(String, unique=True, index=True)
    role = Column(String, default=UserRole.STUDENT, nullable=False)
    is_active = Column(Boolean(), default=True)

    proctoring_sessions = relationship("ProctoringSession", back_populates="user")
    assessments = relationship("Assessment", back_populates="instructor")

    @property
    def is_instructor(self) -> bool:
        return self.role in (UserRole.INSTRUCTOR, UserRole.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
