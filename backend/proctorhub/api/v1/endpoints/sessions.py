from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Literal, Optional

from ....core.database import get_async_db
from ....api.deps import get_current_active_user
from ....api.views import session_view, ensure_can_view, ensure_can_manage
from ....models.user import User
from ....schemas.proctoring import SessionCreate, SessionView, SetActiveRequest
from ....services.session_service import (
    SessionService,
    AssessmentNotFoundError,
    ConcurrentCreateError,
    SessionClosedError,
    StaleSessionVersionError,
)

router = APIRouter()


@router.post("", response_model=SessionView, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreate,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Start a fresh attempt, retiring any open attempt for the same assessment"""
    service = SessionService(db)
    try:
        session = await service.create_session(payload.assessment_id, current_user.id)
    except AssessmentNotFoundError:
        raise HTTPException(status_code=404, detail="Assessment not found")
    except ConcurrentCreateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return session_view(session, current_user)


@router.get("", response_model=List[SessionView])
async def list_sessions(
    assessment_id: Optional[str] = None,
    state: Optional[Literal["waiting", "active", "closed"]] = Query(default=None),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Sessions visible to the caller; sweeps expired sessions first unless disabled"""
    service = SessionService(db)
    sessions = await service.list_sessions(current_user, assessment_id=assessment_id, state=state)
    return [session_view(session, current_user) for session in sessions]


@router.get("/{session_id}", response_model=SessionView)
async def get_session(
    session_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    service = SessionService(db)
    session = await service.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    ensure_can_view(current_user, session)
    return session_view(session, current_user)


@router.patch("/{session_id}", response_model=SessionView)
async def set_proctoring_active(
    session_id: str,
    payload: SetActiveRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Start or stop proctoring; stopping a completed attempt deletes it"""
    service = SessionService(db)
    session = await service.get_session_brief(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    ensure_can_manage(current_user, session)

    try:
        session, deleted = await service.set_active(
            session_id,
            payload.proctoring_active,
            expected_version=payload.expected_version,
        )
    except StaleSessionVersionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except SessionClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return session_view(session, current_user, deleted=deleted)


@router.delete("/{session_id}")
async def end_session(
    session_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Force-end an attempt: the session and its events are removed"""
    service = SessionService(db)
    session = await service.get_session_brief(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    ensure_can_manage(current_user, session)

    await service.delete_session(session_id)
    return {"session_id": session_id, "deleted": True}
