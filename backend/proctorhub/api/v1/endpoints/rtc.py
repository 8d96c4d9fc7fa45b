from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ....core.database import get_async_db
from ....api.deps import get_current_active_user
from ....api.views import ensure_can_view, is_session_student, owns_assessment
from ....models.user import User
from ....schemas.proctoring import SignalPublish, SignalResponse, SignalRole
from ....services.session_service import SessionService, SessionNotFoundError
from ....services.signaling_service import SignalingService, INSTRUCTOR_ROLES, STUDENT_ROLES

router = APIRouter()


async def _load_session(db: AsyncSession, session_id: str, current_user: User):
    session = await SessionService(db).get_session_brief(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    ensure_can_view(current_user, session)
    return session


def _response(session, role: str, signal, current_user: User) -> SignalResponse:
    return SignalResponse(
        session_id=session.id,
        type=role,
        signal=signal,
        user_id=current_user.id,
        is_instructor=owns_assessment(current_user, session.assessment),
        is_student=is_session_student(current_user, session),
    )


@router.post("", response_model=SignalResponse)
async def publish_signal(
    payload: SignalPublish,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Drop a handshake payload into the session mailbox for the given role"""
    session = await _load_session(db, payload.session_id, current_user)

    if not current_user.is_admin:
        allowed = set()
        if is_session_student(current_user, session):
            allowed.update(STUDENT_ROLES)
        if owns_assessment(current_user, session.assessment):
            allowed.update(INSTRUCTOR_ROLES)
        if payload.type not in allowed:
            raise HTTPException(status_code=403, detail=f"Not allowed to publish '{payload.type}' signals")

    try:
        await SignalingService(db).publish(payload.session_id, payload.type, payload.signal)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return _response(session, payload.type, payload.signal, current_user)


@router.get("", response_model=SignalResponse)
async def poll_signal(
    session_id: str = Query(...),
    type: SignalRole = Query(...),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_async_db)
):
    """Most recent payload for the role, or a null signal if none was published yet"""
    session = await _load_session(db, session_id, current_user)
    try:
        signal = await SignalingService(db).poll(session_id, type)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return _response(session, type, signal, current_user)
