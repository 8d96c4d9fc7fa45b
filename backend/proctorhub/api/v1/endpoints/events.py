from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ....core.database import get_async_db
from ....api.deps import get_current_active_user
from ....api.views import ensure_can_view, is_session_student
from ....models.user import User
from ....schemas.proctoring import EventCreate, SessionEventView, ViolationSummary
from ....services.session_service import SessionService

router = APIRouter()


@router.post("/{session_id}/events", response_model=SessionEventView, status_code=status.HTTP_201_CREATED)
async def log_event(
    session_id: str,
    event: EventCreate,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Append a monitoring event (violation, removal, camera failure) to the session log"""
    service = SessionService(db)
    session = await service.get_session_brief(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    if not (is_session_student(current_user, session) or current_user.is_admin):
        raise HTTPException(status_code=403, detail="Only the session's student can log events")

    db_event = await service.log_event(session_id, event.type, event.metadata)
    return SessionEventView.model_validate(db_event)


@router.get("/{session_id}/violations", response_model=ViolationSummary)
async def get_violation_summary(
    session_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    service = SessionService(db)
    session = await service.get_session_brief(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    ensure_can_view(current_user, session)

    return await service.violation_summary(session_id)
