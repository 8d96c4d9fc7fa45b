from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from typing import Optional, List
import uuid

from ..models.assessment import Assessment, Question
from ..schemas.assessment import AssessmentCreate


class AssessmentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_assessment(self, assessment_id: str) -> Optional[Assessment]:
        result = await self.db.execute(
            select(Assessment)
            .options(selectinload(Assessment.questions))
            .filter(Assessment.id == assessment_id)
        )
        return result.scalars().first()

    async def list_assessments(self, instructor_id: Optional[int] = None) -> List[Assessment]:
        query = select(Assessment).options(selectinload(Assessment.questions))
        if instructor_id is not None:
            query = query.filter(Assessment.instructor_id == instructor_id)
        result = await self.db.execute(query.order_by(Assessment.created_at.desc()))
        return list(result.scalars().all())

    async def create_assessment(self, data: AssessmentCreate, instructor_id: int) -> Assessment:
        db_assessment = Assessment(
            id=str(uuid.uuid4()),
            kind=data.kind,
            title=data.title,
            instructor_id=instructor_id,
            requires_proctoring=data.requires_proctoring,
        )
        for order_number, question in enumerate(data.questions, start=1):
            db_assessment.questions.append(Question(
                id=str(uuid.uuid4()),
                prompt=question.prompt,
                options=question.options,
                correct_option=question.correct_option,
                points=question.points,
                order_number=order_number,
            ))
        self.db.add(db_assessment)
        await self.db.commit()

        return await self.get_assessment(db_assessment.id)
