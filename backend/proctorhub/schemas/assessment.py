from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from typing import List, Literal, Optional


class QuestionCreate(BaseModel):
    prompt: str
    options: List[str] = Field(min_length=2)
    correct_option: int = Field(ge=0)
    points: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def check_correct_option(self):
        if self.correct_option >= len(self.options):
            raise ValueError("correct_option must index one of the options")
        return self


class AssessmentCreate(BaseModel):
    title: str
    kind: Literal["exam", "quiz"] = "exam"
    requires_proctoring: bool = True
    questions: List[QuestionCreate] = []


class QuestionView(BaseModel):
    id: str
    prompt: str
    options: List[str]
    points: int
    # only populated for the owning instructor
    correct_option: Optional[int] = None

    class Config:
        from_attributes = True


class AssessmentSummary(BaseModel):
    id: str
    kind: str
    title: str

    class Config:
        from_attributes = True


class AssessmentView(AssessmentSummary):
    instructor_id: int
    requires_proctoring: bool
    created_at: datetime
    questions: List[QuestionView] = []
