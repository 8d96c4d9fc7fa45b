from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from ....core.database import get_async_db
from ....api.deps import get_current_active_user, get_current_instructor
from ....api.views import assessment_view
from ....models.user import User
from ....schemas.assessment import AssessmentCreate, AssessmentView
from ....services.assessment_service import AssessmentService

router = APIRouter()


@router.post("", response_model=AssessmentView, status_code=status.HTTP_201_CREATED)
async def create_assessment(
    payload: AssessmentCreate,
    current_user: User = Depends(get_current_instructor),
    db: AsyncSession = Depends(get_async_db)
):
    assessment = await AssessmentService(db).create_assessment(payload, current_user.id)
    return assessment_view(assessment, current_user)


@router.get("", response_model=List[AssessmentView])
async def list_assessments(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Instructors see the assessments they own; everyone else sees all of them"""
    owner = current_user.id if current_user.is_instructor and not current_user.is_admin else None
    assessments = await AssessmentService(db).list_assessments(instructor_id=owner)
    return [assessment_view(assessment, current_user) for assessment in assessments]


@router.get("/{assessment_id}", response_model=AssessmentView)
async def get_assessment(
    assessment_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    assessment = await AssessmentService(db).get_assessment(assessment_id)
    if not assessment:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return assessment_view(assessment, current_user)
