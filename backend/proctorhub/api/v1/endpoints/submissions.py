from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from ....core.database import get_async_db
from ....api.deps import get_current_active_user
from ....api.views import session_view, ensure_can_view, is_session_student
from ....models.user import User
from ....schemas.proctoring import SessionView, SubmitAnswersRequest, SubmissionResult
from ....services.session_service import SessionService, SessionClosedError, AttemptRemovedError

router = APIRouter()


@router.post("", response_model=SubmissionResult)
async def submit_answers(
    payload: SubmitAnswersRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Score the answers and mark the attempt completed"""
    service = SessionService(db)
    session = await service.get_session_brief(payload.session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    if not is_session_student(current_user, session):
        raise HTTPException(status_code=403, detail="Not authorized")

    try:
        return await service.submit_answers(payload.session_id, payload.answers)
    except SessionClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except AttemptRemovedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("", response_model=List[SessionView])
async def list_my_submissions(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    service = SessionService(db)
    sessions = await service.list_submissions(current_user.id)
    return [session_view(session, current_user) for session in sessions]


@router.get("/{session_id}", response_model=SessionView)
async def get_submission(
    session_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    service = SessionService(db)
    session = await service.get_session(session_id)
    if not session or not session.completed:
        raise HTTPException(status_code=404, detail="Submission not found")

    ensure_can_view(current_user, session)
    return session_view(session, current_user)
